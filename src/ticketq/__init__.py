"""ticketq - dependency-aware ticket scheduling and queue dispatch."""

__version__ = "0.1.0"
