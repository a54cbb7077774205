"""
viewport.py — The only surface the sync engine needs from a map renderer.

    add(marker)              → opaque handle
    remove(handle)
    focus(position, zoom)
    highlight(handle, active)

plus two attributes the controller reads: `ready` (can we draw yet?) and
`zoom` (current zoom, used as a floor for focus).

FrameViewport is the production implementation: the real map lives in the
operator's browser, so every command becomes a JSON frame on an outbox
queue that the WebSocket session drains. Commands never await — the
controller's reconciliation pass therefore has no suspension points and
cannot interleave with another pass.
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from fieldmap.core.errors import RenderSyncError
from fieldmap.models.map import MarkerOut
from fieldmap.models.report import Coordinates


class Viewport(Protocol):
    ready: bool
    zoom: int

    def add(self, marker: MarkerOut) -> Any: ...

    def remove(self, handle: Any) -> None: ...

    def focus(self, position: Coordinates, zoom_hint: int) -> None: ...

    def highlight(self, handle: Any, active: bool) -> None: ...


@dataclass(frozen=True)
class RenderHandle:
    """Identifies one drawn marker instance on the client."""

    serial: int
    marker_id: str


class FrameViewport:
    """Viewport backed by an outbound frame queue (one per dashboard session)."""

    def __init__(self, outbox: Optional[asyncio.Queue] = None, zoom: int = 14) -> None:
        self.outbox: asyncio.Queue = outbox if outbox is not None else asyncio.Queue()
        self.ready = True
        self.zoom = zoom
        self._serials = itertools.count(1)
        self._live: set[RenderHandle] = set()

    @property
    def live_handles(self) -> frozenset[RenderHandle]:
        return frozenset(self._live)

    def _send(self, frame: dict) -> None:
        self.outbox.put_nowait(frame)

    def _check_ready(self) -> None:
        if not self.ready:
            raise RenderSyncError("viewport not ready")

    def add(self, marker: MarkerOut) -> RenderHandle:
        self._check_ready()
        handle = RenderHandle(serial=next(self._serials), marker_id=marker.id)
        self._live.add(handle)
        self._send({
            "type": "marker.add",
            "handle": handle.serial,
            "marker": marker.model_dump(mode="json"),
        })
        return handle

    def remove(self, handle: RenderHandle) -> None:
        if handle not in self._live:
            raise RenderSyncError(f"unknown render handle {handle!r}")
        self._live.discard(handle)
        self._send({"type": "marker.remove", "handle": handle.serial, "marker_id": handle.marker_id})

    def focus(self, position: Coordinates, zoom_hint: int) -> None:
        self._check_ready()
        self.zoom = zoom_hint
        self._send({"type": "viewport.focus", "position": position.model_dump(), "zoom": zoom_hint})

    def highlight(self, handle: RenderHandle, active: bool) -> None:
        if handle not in self._live:
            raise RenderSyncError(f"unknown render handle {handle!r}")
        self._send({
            "type": "marker.highlight",
            "handle": handle.serial,
            "marker_id": handle.marker_id,
            "active": active,
        })
