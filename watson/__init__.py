"""Watson Sync - encrypted credential vault and calendar sync engine."""

__version__ = "0.3.0"
