"""Router modules exposed by the dashboard API."""
from . import auth, sso, two_factor

__all__ = [
    "auth",
    "sso",
    "two_factor",
]
