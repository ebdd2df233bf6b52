"""Background workers for scheduled jobs."""
from .listing_expiry_worker import start_listing_expiry_worker
from .reconciliation_worker import start_reconciliation_worker

__all__ = ["start_listing_expiry_worker", "start_reconciliation_worker"]
