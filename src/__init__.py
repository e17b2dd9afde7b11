"""Job execution core: admission, locking, dependencies, lifecycle and statistics."""

__version__ = "1.0.0"
