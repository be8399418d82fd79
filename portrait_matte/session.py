"""
Model acquisition and ONNX Runtime session lifecycle for one worker.

An `InferenceContext` owns at most one session. Loading walks the candidate
sources in order and keeps the first that both downloads and builds. Once the
adaptive fallback flag is set, every later build is restricted to the portable
CPU provider for the lifetime of the context.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence

import onnxruntime as ort
import requests

from .config import HARDWARE_PROVIDERS, PORTABLE_PROVIDER, SOFTWARE_PROVIDERS, get_fetch_timeout_s, get_num_threads
from .errors import ModelLoadFailed, NoModelSources
from .events import Emit, null_emit

logger = logging.getLogger(__name__)


class LoadState(enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"


@dataclass
class SessionHandle:
    session: Any
    active_provider: str
    input_names: List[str] = field(default_factory=list)
    output_names: List[str] = field(default_factory=list)
    io_shapes_logged: bool = False

    @property
    def is_portable(self) -> bool:
        return self.active_provider == PORTABLE_PROVIDER

    def input_size(self) -> Optional[int]:
        """
        Square spatial size the model was exported with, or None for dynamic dims.
        """
        try:
            shape = list(self.session.get_inputs()[0].shape)
        except Exception:  # noqa: BLE001 - metadata is optional on fake/odd sessions
            return None
        if len(shape) != 4:
            return None
        h, w = shape[2], shape[3]
        if isinstance(h, int) and isinstance(w, int) and h == w and h > 0:
            return h
        return None

    def run(self, tensor) -> Any:
        return self.session.run(None, {self.input_names[0]: tensor})

    def release(self) -> None:
        # onnxruntime frees native memory when the last reference goes away
        self.session = None


def available_providers() -> List[str]:
    return list(ort.get_available_providers())


def select_providers(force_portable: bool, available: Optional[Iterable[str]] = None) -> List[str]:
    """
    Layered preference: hardware-accelerated, then software-accelerated, then CPU.

    With force_portable only the CPU provider is returned.
    """
    if force_portable:
        return [PORTABLE_PROVIDER]
    avail = set(available_providers() if available is None else available)
    selected = [p for p in (*HARDWARE_PROVIDERS, *SOFTWARE_PROVIDERS) if p in avail]
    selected.append(PORTABLE_PROVIDER)
    return selected


def fetch_model_bytes(source: str, timeout: Optional[float] = None) -> bytes:
    """
    Fetch raw model bytes from an http(s) URL, a file:// URL or a local path.
    """
    if source.startswith(("http://", "https://")):
        resp = requests.get(source, timeout=timeout or get_fetch_timeout_s())
        if not 200 <= resp.status_code < 300:
            raise RuntimeError(f"fetch {resp.status_code}")
        return resp.content

    path = source[len("file://") :] if source.startswith("file://") else source
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model not found: {path}")
    with open(path, "rb") as fp:
        return fp.read()


def _session_options(threads: int) -> "ort.SessionOptions":
    so = ort.SessionOptions()
    so.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    so.enable_mem_pattern = False
    so.intra_op_num_threads = threads
    return so


def create_session(model_bytes: bytes, *, force_portable: bool = False, emit: Emit = null_emit) -> SessionHandle:
    """
    Build an InferenceSession, degrading to CPU-only when the accelerated combo fails.
    """
    threads = get_num_threads()
    emit("cpu_threads", str(threads))

    combos = [select_providers(force_portable)]
    if combos[0] != [PORTABLE_PROVIDER]:
        combos.append([PORTABLE_PROVIDER])

    last_err: Optional[Exception] = None
    for combo in combos:
        label = "+".join(combo)
        emit("provider_try", label)
        try:
            sess = ort.InferenceSession(model_bytes, sess_options=_session_options(threads), providers=combo)
        except Exception as e:
            last_err = e
            emit("provider_fail", f"{label} :: {e}")
            logger.warning("session build failed on %s: %s", label, e)
            continue
        active = (sess.get_providers() or [PORTABLE_PROVIDER])[0]
        emit("provider", active)
        return SessionHandle(
            session=sess,
            active_provider=active,
            input_names=[i.name for i in sess.get_inputs()],
            output_names=[o.name for o in sess.get_outputs()],
        )
    if last_err is None:
        raise RuntimeError("no provider combination tried")
    raise last_err


class InferenceContext:
    """
    Session state for one isolated worker: UNLOADED -> LOADING -> READY.

    A failed load returns to UNLOADED so the next request retries from scratch.
    Concurrent `ensure_loaded` callers share the in-flight attempt.
    """

    def __init__(self, emit: Emit = null_emit):
        self._emit = emit
        self._lock = threading.Lock()
        self._state = LoadState.UNLOADED
        self._handle: Optional[SessionHandle] = None
        self._inflight: Optional[Future] = None
        self._force_portable = False

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def handle(self) -> Optional[SessionHandle]:
        return self._handle

    @property
    def fallback_forced(self) -> bool:
        return self._force_portable

    def force_portable(self, reason: str = "") -> None:
        """Set the adaptive fallback flag. Never cleared."""
        if self._force_portable:
            return
        self._force_portable = True
        self._emit("force_cpu_only", reason or "1")
        logger.warning("forcing CPU-only execution%s", f" ({reason})" if reason else "")

    def ensure_loaded(self, sources: Sequence[str]) -> SessionHandle:
        with self._lock:
            if self._state is LoadState.READY and self._handle is not None:
                return self._handle
            if self._state is LoadState.LOADING and self._inflight is not None:
                pending, owner = self._inflight, False
            elif not sources:
                raise NoModelSources()
            else:
                pending, owner = Future(), True
                self._inflight = pending
                self._state = LoadState.LOADING

        if not owner:
            return pending.result()

        try:
            handle = self._load_from_sources(sources)
        except BaseException as e:
            with self._lock:
                self._state = LoadState.UNLOADED
                self._inflight = None
            pending.set_exception(e)
            raise

        with self._lock:
            self._handle = handle
            self._state = LoadState.READY
            self._inflight = None
        pending.set_result(handle)
        return handle

    def _load_from_sources(self, sources: Sequence[str]) -> SessionHandle:
        last_err: Optional[Exception] = None
        for src in sources:
            self._emit("fetch", src)
            try:
                data = fetch_model_bytes(src)
                self._emit("init", src)
                handle = create_session(data, force_portable=self._force_portable, emit=self._emit)
            except Exception as e:
                last_err = e
                self._emit("source_fail", f"{src} :: {e}")
                logger.warning("model source failed: %s (%s)", src, e)
                continue
            self._emit("ready", src)
            logger.info("model ready from %s (provider=%s)", src, handle.active_provider)
            return handle

        msg = str(last_err) if last_err is not None else "model load failed"
        self._emit("error", msg)
        raise ModelLoadFailed(f"model load failed: {msg}", last_error=last_err) from last_err

    def release(self) -> None:
        """Drop the current session so the next ensure_loaded rebuilds it."""
        with self._lock:
            handle, self._handle = self._handle, None
            if self._state is LoadState.READY:
                self._state = LoadState.UNLOADED
        if handle is not None:
            handle.release()
