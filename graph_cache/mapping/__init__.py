"""Mapping layer - resolved records into live views."""

from __future__ import annotations

from graph_cache.mapping.materializer import DocumentWatch, Materializer, ReadResult
from graph_cache.mapping.views import LiveView

__all__ = [
    "Materializer",
    "DocumentWatch",
    "ReadResult",
    "LiveView",
]
