"""
Controller-side segmentation engine.

The engine resolves model sources once, owns the worker transport and
correlates responses to callers by request id. Every request id has one
pending entry that is settled exactly once: by the worker's response or by
the segment timeout, whichever comes first. A response that finds no pending
entry is reported as a `request_unmatched` phase and dropped.
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from .channel import ThreadTransport
from .config import get_segment_timeout_s
from .contracts import LoadRequest, PhaseMessage, Response, SegmentationResult, SegmentRequest
from .errors import NoModelSources, SegmentationFailed, SegmentTimeout, error_from_kind
from .events import PhaseBus, PhaseListener
from .preprocess import to_rgb_array
from .sources import Query, force_cpu_requested, resolve_model_sources

logger = logging.getLogger(__name__)


@dataclass
class _PendingEntry:
    on_success: Callable[[Response], None]
    on_failure: Callable[[BaseException], None]


class SegmentationEngine:
    def __init__(
        self,
        model_sources: Optional[Sequence[str]] = None,
        *,
        query: Query = None,
        env: Optional[Mapping[str, str]] = None,
        transport_factory: Optional[Callable[[], Any]] = None,
        segment_timeout_s: Optional[float] = None,
    ):
        try:
            self._sources = resolve_model_sources(model_sources, env=env, query=query)
        except NoModelSources:
            # surfaced by load_model(), before any worker traffic
            self._sources = ()
        self._query = query
        self._transport_factory = transport_factory or ThreadTransport
        self._segment_timeout_s = get_segment_timeout_s() if segment_timeout_s is None else segment_timeout_s

        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._pending: Dict[int, _PendingEntry] = {}
        self._transport = None
        self._ready = False
        self._loading: Optional[Future] = None
        self._bus = PhaseBus()

    @property
    def model_sources(self) -> tuple:
        return self._sources

    def is_ready(self) -> bool:
        return self._ready

    def on_phase(self, callback: PhaseListener) -> Callable[[], None]:
        """Register a diagnostic observer; returns its unsubscribe function."""
        return self._bus.subscribe(callback)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ------------------------------------------------------------------ #
    # Worker plumbing
    # ------------------------------------------------------------------ #

    def _ensure_worker(self):
        if self._transport is None:
            transport = self._transport_factory()
            transport.start(self._on_message, self._on_worker_error)
            self._transport = transport
        return self._transport

    def _on_message(self, msg) -> None:
        if isinstance(msg, PhaseMessage):
            self._bus.emit(msg.phase, msg.detail)
            if msg.phase == "ready":
                self._ready = True
            return
        if not isinstance(msg, Response):
            return

        with self._lock:
            entry = self._pending.pop(msg.id, None)
        if entry is None:
            self._bus.emit("request_unmatched", str(msg.id))
            return
        self._bus.emit("request_in", f"{msg.id}:{'ok' if msg.ok else 'fail'}")
        if not msg.ok:
            entry.on_failure(error_from_kind(msg.error_kind, msg.error or "segmentation failed"))
            return
        entry.on_success(msg)

    def _on_worker_error(self, detail: str) -> None:
        self._bus.emit("worker_error", detail)
        logger.error("segmentation worker failed: %s", detail)
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            transport, self._transport = self._transport, None
            self._ready = False
        if transport is not None:
            transport.close()
        for entry in pending:
            entry.on_failure(SegmentationFailed(f"worker error: {detail}"))

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def load_model(self, force_provider_fallback: bool = False) -> Future:
        """
        Load the model in the worker. Idempotent: returns the in-flight future
        when a load is already running and a completed one once ready.
        """
        with self._lock:
            if self._ready:
                done: Future = Future()
                done.set_result(None)
                return done
            if self._loading is not None:
                return self._loading

            if not self._sources:
                self._bus.emit("config_error_no_model_urls", "Set RMBG_MODEL_URL or ?model=")
                failed: Future = Future()
                failed.set_exception(NoModelSources())
                return failed

            transport = self._ensure_worker()
            force = force_provider_fallback or force_cpu_requested(self._query)
            self._bus.emit("model_sources", ",".join(self._sources))

            fut: Future = Future()
            req_id = next(self._ids)

            def on_success(_resp: Response) -> None:
                with self._lock:
                    self._ready = True
                    self._loading = None
                fut.set_result(None)

            def on_failure(err: BaseException) -> None:
                with self._lock:
                    self._loading = None
                fut.set_exception(err)

            self._pending[req_id] = _PendingEntry(on_success, on_failure)
            self._loading = fut

        # no timeout on load; worker phases report progress
        self._send(
            transport,
            LoadRequest(id=req_id, model_paths=list(self._sources), force_provider_fallback=force),
        )
        return fut

    def segment(self, image) -> Future:
        """
        Segment an image (PIL image or RGB uint8 array). The array is handed to
        the worker and must not be modified by the caller afterwards.

        The returned future fails with SegmentTimeout if no response arrives
        within the segment timeout.
        """
        rgb = to_rgb_array(image)
        h, w = rgb.shape[:2]

        fut: Future = Future()
        with self._lock:
            transport = self._ensure_worker()
            req_id = next(self._ids)
            timer = threading.Timer(self._segment_timeout_s, self._expire, args=(req_id,))
            timer.daemon = True

            def on_success(resp: Response) -> None:
                timer.cancel()
                fut.set_result(SegmentationResult(rgba=resp.alpha))

            def on_failure(err: BaseException) -> None:
                timer.cancel()
                fut.set_exception(err)

            self._pending[req_id] = _PendingEntry(on_success, on_failure)

        self._bus.emit("request_out", str(req_id))
        timer.start()
        self._send(
            transport,
            SegmentRequest(id=req_id, image=rgb, width=w, height=h, model_paths=list(self._sources)),
        )
        return fut

    def _send(self, transport, msg) -> None:
        try:
            transport.send(msg)
        except Exception as e:
            with self._lock:
                entry = self._pending.pop(msg.id, None)
            if entry is not None:
                entry.on_failure(SegmentationFailed(f"could not reach worker: {e}"))

    def _expire(self, req_id: int) -> None:
        with self._lock:
            entry = self._pending.pop(req_id, None)
        if entry is None:
            return
        self._bus.emit("segment_timeout", str(req_id))
        entry.on_failure(SegmentTimeout("segment timeout"))

    def close(self) -> None:
        """Stop the worker and fail anything still pending."""
        with self._lock:
            transport, self._transport = self._transport, None
            pending = list(self._pending.values())
            self._pending.clear()
            self._ready = False
            self._loading = None
        if transport is not None:
            transport.close()
        for entry in pending:
            entry.on_failure(SegmentationFailed("engine closed"))

    def __enter__(self) -> "SegmentationEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


_ENGINE: Optional[SegmentationEngine] = None
_ENGINE_LOCK = threading.Lock()


def get_engine() -> SegmentationEngine:
    """Process-wide engine, built on first use from environment configuration."""
    global _ENGINE
    with _ENGINE_LOCK:
        if _ENGINE is None:
            _ENGINE = SegmentationEngine()
        return _ENGINE
