"""
Sats Credits CLI

Commands:
  serve      - Run the API server
  reconcile  - Poll the gateway for pending invoices (for cron / schedulers)
  session    - Create an anonymous session
  balance    - Show an owner's balance and recent usage
  topup      - Open a top-up invoice for an owner
"""

import argparse
import os
import sys


def _owner_from_args(service, args):
    """Resolve --user or --token into an Owner."""
    return service.registry.resolve_owner(user_id=args.user, token=args.token)


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Sats Credits on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_reconcile(args):
    """Run one reconciliation pass."""
    from billing.service import CreditService
    from core.errors import ConfigurationError

    service = CreditService()

    try:
        report = service.reconcile_pending_invoices()
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("Reconciliation")
    print("=" * 40)
    for key, value in report.to_dict().items():
        print(f"{key.capitalize():<10} {value}")

    if report.errors:
        sys.exit(2)


def cmd_session(args):
    """Create an anonymous session."""
    from billing.service import CreditService

    service = CreditService()
    session = service.create_anonymous_session(user_agent="cli")

    print(f"Session ID: {session.id}")
    print(f"Token: {session.token}")


def cmd_balance(args):
    """Show balance and usage for an owner."""
    from billing.service import CreditService
    from core.errors import CreditError

    service = CreditService()

    try:
        owner = _owner_from_args(service, args)
        balance = service.get_balance(owner)
        summary = service.usage_summary(owner, limit=args.limit)
    except CreditError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Owner: {summary['owner']}")
    print(f"Balance: {balance} sats")
    print(f"Total spent: {summary['total']} sats")
    for record in summary["history"]:
        print(f"  {record['created_at'][:19]}  {record['action']:<20} {record['amount']:>8}")


def cmd_topup(args):
    """Open a top-up invoice."""
    from billing.service import CreditService
    from core.errors import CreditError

    service = CreditService()

    try:
        owner = _owner_from_args(service, args)
        invoice = service.create_top_up_invoice(owner, args.amount)
    except CreditError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Invoice: {invoice.external_invoice_id}")
    print(f"  Amount: {invoice.amount} sats")
    print(f"  Pay: {invoice.payment_request}")


def main():
    parser = argparse.ArgumentParser(
        description="Sats Credits - prepaid balances over Lightning",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # reconcile
    subparsers.add_parser("reconcile", help="Reconcile pending invoices")

    # session
    subparsers.add_parser("session", help="Create an anonymous session")

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show balance and usage")
    balance_owner = balance_parser.add_mutually_exclusive_group(required=True)
    balance_owner.add_argument("--user", type=int, help="Registered user ID")
    balance_owner.add_argument("--token", help="Anonymous session token")
    balance_parser.add_argument("--limit", type=int, default=10, help="Usage rows to show")

    # topup
    topup_parser = subparsers.add_parser("topup", help="Open a top-up invoice")
    topup_owner = topup_parser.add_mutually_exclusive_group(required=True)
    topup_owner.add_argument("--user", type=int, help="Registered user ID")
    topup_owner.add_argument("--token", help="Anonymous session token")
    topup_parser.add_argument("amount", type=int, help="Sats to buy")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "reconcile":
        cmd_reconcile(args)
    elif args.command == "session":
        cmd_session(args)
    elif args.command == "balance":
        cmd_balance(args)
    elif args.command == "topup":
        cmd_topup(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
