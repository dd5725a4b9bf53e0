"""
ENTITLEMENT RAIL - Vercel Serverless API
Serverless deployment of the FastAPI app behind Mangum.
"""

import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from entitlement_rail.api.server import app  # noqa: E402


# Vercel handler
handler = Mangum(app, lifespan="auto")
