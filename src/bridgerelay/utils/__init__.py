"""Utility modules for bridgerelay."""

from bridgerelay.utils.locks import LedgerSubmissionLock, LockTimeoutError, get_ledger_lock

__all__ = ["LedgerSubmissionLock", "LockTimeoutError", "get_ledger_lock"]
