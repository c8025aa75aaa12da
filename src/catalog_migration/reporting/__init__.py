"""Progress display for migration runs."""
