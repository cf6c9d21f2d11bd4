"""FastAPI application package for the admin dashboard."""

from .logging import setup_logging

setup_logging()

__all__ = ["setup_logging"]
