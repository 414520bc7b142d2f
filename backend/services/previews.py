"""
In-memory preview handles for normalized images.

A preview is a short-lived reference to encoded bytes that a client can render
right away (served under /api/previews/<id>). Handles are not reclaimed
automatically: whoever receives one must release it once the preview is no
longer shown.
"""

import logging
import threading
import uuid
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

PREVIEW_URL_PREFIX = "/api/previews"


class PreviewHandle:
    """Reference to a preview registered in a PreviewRegistry."""

    def __init__(self, registry: "PreviewRegistry", preview_id: str, media_type: str, size: int):
        self._registry = registry
        self.id = preview_id
        self.media_type = media_type
        self.size = size

    @property
    def url(self) -> str:
        return f"{PREVIEW_URL_PREFIX}/{self.id}"

    @property
    def released(self) -> bool:
        return not self._registry.contains(self.id)

    def release(self) -> bool:
        """Drop the preview bytes. Safe to call more than once."""
        return self._registry.release(self.id)

    def __enter__(self) -> "PreviewHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"PreviewHandle(id={self.id!r}, media_type={self.media_type!r}, size={self.size})"


class PreviewRegistry:
    """Thread-safe store of preview bytes keyed by a random id."""

    def __init__(self):
        self._items: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def create(self, data: bytes, media_type: str) -> PreviewHandle:
        preview_id = uuid.uuid4().hex
        with self._lock:
            self._items[preview_id] = (bytes(data), media_type)
        logger.debug(f"Registered preview {preview_id} ({len(data)} bytes)")
        return PreviewHandle(self, preview_id, media_type, len(data))

    def get(self, preview_id: str) -> Tuple[bytes, str]:
        """Return (bytes, media_type). Raises KeyError if unknown or released."""
        with self._lock:
            return self._items[preview_id]

    def contains(self, preview_id: str) -> bool:
        with self._lock:
            return preview_id in self._items

    def release(self, preview_id: str) -> bool:
        with self._lock:
            removed: Optional[Tuple[bytes, str]] = self._items.pop(preview_id, None)
        if removed is not None:
            logger.debug(f"Released preview {preview_id}")
        return removed is not None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


_default_registry = PreviewRegistry()


def get_preview_registry() -> PreviewRegistry:
    return _default_registry
