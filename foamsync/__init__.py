"""foamsync - offline-tolerant sync and inventory reconciliation for spray-foam contractors."""

__version__ = "0.1.0"
