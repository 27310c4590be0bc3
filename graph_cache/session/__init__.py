"""Session layer - per-subscriber connection composition."""

from __future__ import annotations

from graph_cache.session.composer import ConnectionComposer, ConnectionView, RecordSource
from graph_cache.session.session import Session

__all__ = [
    "Session",
    "ConnectionComposer",
    "ConnectionView",
    "RecordSource",
]
