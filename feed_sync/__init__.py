"""feed_sync - RSS/Atom synchronization with machine-translated enrichment."""

__version__ = "0.1.0"
