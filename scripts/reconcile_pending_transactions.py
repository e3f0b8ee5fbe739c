#!/usr/bin/env python3
"""
Pending Transaction Reconciliation Script

Sweeps transactions that have stayed `pending` for too long and asks the
payment gateway for their real status:
- success at the gateway -> order created, transaction settled
- failed / reversed -> transaction marked failed
- abandoned, or never registered at the gateway -> transaction marked abandoned
- anything else -> left pending for the next run

Reserved stock is not restored for failed or abandoned transactions.

Usage:
    python reconcile_pending_transactions.py
    python reconcile_pending_transactions.py --older-than-minutes 60 --limit 200 --dry-run
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import timedelta
from pathlib import Path

# Add parent directory to path to import modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.settings import Settings
from domain.time import utc_now
from repositories.store import CheckoutStore
from services.notification_service import OrderNotifier
from services.payment_gateway import PaymentGatewayClient
from services.settlement_service import ReconciliationReport, SettlementProcessor


def build_store(settings: Settings) -> CheckoutStore:
    if settings.storage_backend == "memory":
        raise RuntimeError("Reconciliation needs persistent storage; STORAGE_BACKEND=memory has nothing to sweep")

    from repositories.supabase_store import SupabaseCheckoutStore

    return SupabaseCheckoutStore()


def print_report(report: ReconciliationReport) -> None:
    print("=" * 50)
    print("RECONCILIATION SUMMARY")
    print("=" * 50)
    print(f"Transactions examined:     {report.examined}")
    print(f"Settled (order created):   {report.settled}")
    print(f"Marked failed:             {report.failed}")
    print(f"Marked abandoned:          {report.abandoned}")
    print(f"Still pending:             {report.still_pending}")
    print(f"Gateway errors:            {len(report.errors)}")
    print("=" * 50)

    for error in report.errors:
        print(f"  ERROR {error}")


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Settle or close payment transactions stuck in pending",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sweep with the configured age threshold (RECONCILE_AFTER_MINUTES)
  python reconcile_pending_transactions.py

  # Only list what would be examined
  python reconcile_pending_transactions.py --older-than-minutes 120 --dry-run
        """
    )

    parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=None,
        help="Only examine transactions pending longer than this (default: RECONCILE_AFTER_MINUTES)"
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of transactions to examine (default: 100)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List stale pending transactions without contacting the gateway"
    )

    args = parser.parse_args()

    try:
        settings = Settings.from_env()
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        minutes = args.older_than_minutes
        if minutes is None:
            minutes = settings.reconcile_after_minutes
        older_than = timedelta(minutes=minutes)

        store = build_store(settings)

        if args.dry_run:
            stale = store.list_stale_pending_transactions(utc_now() - older_than, args.limit)
            print(f"{len(stale)} transaction(s) pending for more than {minutes} minute(s):")
            for transaction in stale:
                print(
                    f"  {transaction.reference}  {transaction.amount} {transaction.currency.value}  "
                    f"created {transaction.created_at.isoformat()}"
                )
            return 0

        gateway = PaymentGatewayClient(settings.gateway_config())
        notifier = OrderNotifier()
        try:
            processor = SettlementProcessor(store=store, gateway=gateway, notifier=notifier)
            report = processor.reconcile_pending(older_than, limit=args.limit)
        finally:
            notifier.shutdown(wait=True)
            gateway.close()

        print_report(report)
        return 1 if report.errors else 0

    except KeyboardInterrupt:
        print("\n\nReconciliation interrupted by user")
        return 130

    except Exception as e:
        print(f"\nFATAL ERROR: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
