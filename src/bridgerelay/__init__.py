"""Cross-ledger token relay: burn on one ledger, mint on the other."""

__version__ = "0.1.0"
