"""Import reconciliation and conflict resolution backend."""

__version__ = "0.1.0"
