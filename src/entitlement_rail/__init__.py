"""
ENTITLEMENT RAIL

Entitlement and quota-accounting engine for a multi-tenant serialization
platform: decides whether a tenant may consume label quota, debits and
credits balances atomically, rolls over yearly allotments and refunds
reservations when generation fails.
"""

__version__ = "1.0.0"
