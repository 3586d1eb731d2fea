"""API routes package."""

from clarity.api.routes import (
    auth,
    brains,
    cards,
    jobs,
    streams,
    uploads,
)

__all__ = [
    "auth",
    "brains",
    "cards",
    "jobs",
    "streams",
    "uploads",
]
