"""
One reconciliation pass over bookings whose capacity outcome is unknown.

Meant to be run periodically (cron, k8s CronJob):

    python -m scripts.reconcile_unknown_outcomes
"""

import logging
import os

from booking_engine.application.booking_orchestrator import BookingOrchestrator
from booking_engine.infrastructure.db.session import SessionLocal
from booking_engine.infrastructure.gateways.inventory_gateway import InventoryGateway


RECONCILIATION_BATCH_SIZE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "50"))


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    gateway = InventoryGateway.from_env()
    try:
        orchestrator = BookingOrchestrator(gateway=gateway, session_factory=SessionLocal)
        report = orchestrator.reconcile_unknown_outcomes(limit=RECONCILIATION_BATCH_SIZE)
    finally:
        gateway.close()

    print(
        f"Reconciliation complete: {len(report.confirmed)} confirmed, "
        f"{len(report.failed)} failed, {len(report.released)} released, "
        f"{len(report.unresolved)} unresolved."
    )


if __name__ == "__main__":
    main()
