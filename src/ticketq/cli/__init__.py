"""Command-line interface for ticketq."""
