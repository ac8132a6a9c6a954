"""HTTP API for Silent Trust."""
