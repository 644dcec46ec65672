"""Smart Library - catalog, circulation and AI summaries for a small lending library."""

__version__ = "1.0.0"
