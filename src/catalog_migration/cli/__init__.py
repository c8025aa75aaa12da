"""Command-line interface for Catalog Bridge."""
