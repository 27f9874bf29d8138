"""HTTP API for FixFlow Core."""
