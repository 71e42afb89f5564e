"""Client-side ride lifecycle synchronization engine."""

__version__ = "0.1.0"
