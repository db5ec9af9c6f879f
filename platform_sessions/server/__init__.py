"""HTTP API for the platform session service."""
