"""HTTP API for the execution core."""
