"""
ENTITLEMENT RAIL - API Module

Production FastAPI server implementing:
- Entitlement enforcement and refunds
- Quota balances, rollover and add-on credits
- Subscription transitions and grace periods
- Proration and reservation sweeps
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
