"""
Entitlement Rail CLI

Commands:
  serve         - Run the entitlement server
  init-db       - Create the schema on DATABASE_URL
  quota         - Show a tenant's balances
  rollover      - Apply yearly-plan rollover for one or all tenants
  activate-plan - Switch plan and reset base quota
  sweep         - Refund stale reservations
  prorate       - Compute a plan change proration
"""

import argparse
import os
import sys
from datetime import timedelta


def cmd_serve(args):
    """Run the entitlement server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Entitlement Rail on {host}:{port}")

    uvicorn.run(
        "entitlement_rail.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_init_db(args):
    """Create the schema."""
    from .persistence.database import get_database

    db = get_database(args.database_url)
    db.initialize()
    print(f"Schema initialized ({'postgres' if db.is_postgres else 'sqlite'})")


def cmd_quota(args):
    """Show a tenant's balances."""
    from .core.errors import NotFoundError
    from .persistence.database import get_database
    from .persistence.repository import TenantRepository

    tenants = TenantRepository(get_database(args.database_url))
    try:
        tenant = tenants.require(args.tenant)
    except NotFoundError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    b = tenant.balances
    print(f"Tenant: {tenant.tenant_id}")
    print("=" * 40)
    print(f"Plan: {tenant.subscription_plan} ({tenant.billing_cycle})")
    print(f"Status: {tenant.subscription_status}")
    print(f"Unit labels: {b.unit_base} base + {b.unit_addon} addon")
    print(f"SSCC labels: {b.sscc_base} base + {b.sscc_addon} addon")
    if tenant.last_quota_rollover_at:
        print(f"Last rollover: {tenant.last_quota_rollover_at.isoformat()}")


def cmd_rollover(args):
    """Apply rollover for one tenant or every tenant."""
    from .persistence.database import get_database
    from .persistence.ledger import QuotaLedger
    from .persistence.repository import TenantRepository

    db = get_database(args.database_url)
    ledger = QuotaLedger(db)
    tenant_ids = [args.tenant] if args.tenant else TenantRepository(db).list_ids()

    total_months = 0
    for tenant_id in tenant_ids:
        result = ledger.apply_rollover(tenant_id)
        if not result.ok:
            print(f"  {tenant_id}: {result.status.value}")
            continue
        if result.months_rolled:
            total_months += result.months_rolled
            print(f"  {tenant_id}: +{result.months_rolled} month(s)")

    print(f"Rollover complete: {len(tenant_ids)} tenant(s), {total_months} month(s) credited")


def cmd_activate_plan(args):
    """Switch a tenant's plan and reset its base quota."""
    from .persistence.database import get_database
    from .persistence.ledger import QuotaLedger

    ledger = QuotaLedger(get_database(args.database_url))
    result = ledger.activate_plan(args.tenant, args.plan, args.cycle)
    if not result.ok:
        print(f"Error: {result.status.value}")
        sys.exit(1)

    b = result.balances
    print(f"Plan {args.plan} active for {args.tenant}")
    print(f"Unit labels: {b.unit_base} base + {b.unit_addon} addon")
    print(f"SSCC labels: {b.sscc_base} base + {b.sscc_addon} addon")


def cmd_sweep(args):
    """Refund reservations left RESERVED."""
    from .config import get_settings
    from .enforcement import EntitlementEnforcer, ReservationSaga
    from .persistence.database import get_database

    minutes = args.minutes or get_settings().reservation_sweep_minutes
    saga = ReservationSaga(EntitlementEnforcer(db=get_database(args.database_url)))
    stats = saga.sweep_stale_reservations(timedelta(minutes=minutes))

    print(f"Examined: {stats['examined']}")
    print(f"Refunded: {stats['refunded']}")
    print(f"Failed: {stats['failed']}")
    if stats["failed"]:
        sys.exit(1)


def cmd_prorate(args):
    """Compute proration for a mid-cycle plan change."""
    from .billing.proration import calculate_proration, format_proration, total_days_in_cycle
    from .core.errors import ProrationError

    total_days = args.total_days or total_days_in_cycle(args.cycle)
    try:
        result = calculate_proration(args.old_price, args.new_price, args.remaining_days, total_days)
    except ProrationError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    formatted = format_proration(result, args.currency)
    print(f"Proration: {formatted['proration_percentage']}")
    print(f"Credit: {formatted['credit_amount_formatted']}")
    print(f"Charge: {formatted['charge_amount_formatted']}")


def main():
    parser = argparse.ArgumentParser(
        description="Entitlement Rail - Quota accounting for serialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # init-db
    subparsers.add_parser("init-db", help="Create the schema")

    # quota
    quota_parser = subparsers.add_parser("quota", help="Show tenant balances")
    quota_parser.add_argument("tenant", help="Tenant ID")

    # rollover
    rollover_parser = subparsers.add_parser("rollover", help="Apply yearly rollover")
    rollover_parser.add_argument("--tenant", help="Only this tenant (default: all)")

    # activate-plan
    plan_parser = subparsers.add_parser("activate-plan", help="Switch plan and reset base quota")
    plan_parser.add_argument("tenant", help="Tenant ID")
    plan_parser.add_argument("plan", help="Plan code, e.g. growth_monthly")
    plan_parser.add_argument("--cycle", help="monthly, quarterly or yearly (default: keep)")

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Refund stale reservations")
    sweep_parser.add_argument("--minutes", type=int, help="Age cutoff in minutes")

    # prorate
    prorate_parser = subparsers.add_parser("prorate", help="Compute plan change proration")
    prorate_parser.add_argument("--old-price", type=float, required=True, help="Minor units")
    prorate_parser.add_argument("--new-price", type=float, required=True, help="Minor units")
    prorate_parser.add_argument("--remaining-days", type=int, required=True)
    prorate_parser.add_argument("--total-days", type=int, help="Overrides --cycle")
    prorate_parser.add_argument("--cycle", default="monthly", help="monthly, quarterly or yearly")
    prorate_parser.add_argument("--currency", default="INR")

    args = parser.parse_args()

    from .logging import setup_logging
    setup_logging()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "init-db":
        cmd_init_db(args)
    elif args.command == "quota":
        cmd_quota(args)
    elif args.command == "rollover":
        cmd_rollover(args)
    elif args.command == "activate-plan":
        cmd_activate_plan(args)
    elif args.command == "sweep":
        cmd_sweep(args)
    elif args.command == "prorate":
        cmd_prorate(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
