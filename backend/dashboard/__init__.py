"""Admin dashboard authentication service."""
