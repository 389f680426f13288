"""Background workers package."""
from .reconciliation_worker import ReconciliationWorker, start_reconciliation_worker

__all__ = ["ReconciliationWorker", "start_reconciliation_worker"]
