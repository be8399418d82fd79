"""
Request/response channel between the engine and its worker.

Both transports carry the same messages over a pair of queues and run the same
`worker.serve` loop; they differ only in isolation:

- ThreadTransport: worker thread in this process, buffers are handed over as-is.
- ProcessTransport: spawned child process, buffers are pickled across.

A reader thread on the controller side delivers every worker message to the
engine callback, in arrival order.
"""

from __future__ import annotations

import logging
import multiprocessing
import queue
import threading
from typing import Callable, Optional

from .contracts import Request, WorkerMessage
from .worker import InferenceWorker, Post, serve

logger = logging.getLogger(__name__)

OnMessage = Callable[[WorkerMessage], None]
OnError = Callable[[str], None]


class _QueueTransport:
    poll_s = 0.5
    join_s = 5.0

    def __init__(self) -> None:
        self._inbox = None
        self._outbox = None
        self._reader: Optional[threading.Thread] = None
        self._on_message: Optional[OnMessage] = None
        self._on_error: Optional[OnError] = None
        self._closing = False

    # subclasses provide the worker
    def _spawn_worker(self) -> None:
        raise NotImplementedError

    def _worker_alive(self) -> bool:
        raise NotImplementedError

    def _exit_detail(self) -> str:
        return "worker stopped"

    def _join_worker(self) -> None:
        raise NotImplementedError

    def start(self, on_message: OnMessage, on_error: OnError) -> None:
        self._on_message = on_message
        self._on_error = on_error
        self._spawn_worker()
        self._reader = threading.Thread(target=self._read_loop, name="matte-reader", daemon=True)
        self._reader.start()

    def send(self, msg: Request) -> None:
        if self._closing:
            raise RuntimeError("transport closed")
        self._inbox.put(msg)

    def _read_loop(self) -> None:
        while True:
            try:
                msg = self._outbox.get(timeout=self.poll_s)
            except queue.Empty:
                if self._closing:
                    break
                if not self._worker_alive():
                    if self._on_error is not None:
                        self._on_error(self._exit_detail())
                    break
                continue
            if msg is None:
                break
            try:
                self._on_message(msg)
            except Exception:  # noqa: BLE001 - keep reading after a bad dispatch
                logger.exception("failed to dispatch worker message")

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            self._inbox.put(None)
        except (OSError, ValueError):
            pass
        self._join_worker()
        try:
            self._outbox.put(None)
        except (OSError, ValueError):
            pass
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=self.join_s)


class ThreadTransport(_QueueTransport):
    def __init__(self, make_worker: Optional[Callable[[Post], InferenceWorker]] = None):
        super().__init__()
        self._make_worker = make_worker
        self._thread: Optional[threading.Thread] = None

    def _spawn_worker(self) -> None:
        self._inbox = queue.Queue()
        self._outbox = queue.Queue()
        self._thread = threading.Thread(
            target=serve,
            args=(self._inbox, self._outbox, self._make_worker),
            name="matte-worker",
            daemon=True,
        )
        self._thread.start()

    def _worker_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _join_worker(self) -> None:
        if self._thread is not None:
            self._thread.join(timeout=self.join_s)


class ProcessTransport(_QueueTransport):
    """Worker in a spawned process; a crash there is reported, not propagated."""

    def __init__(self) -> None:
        super().__init__()
        self._mp = multiprocessing.get_context("spawn")
        self._process = None

    def _spawn_worker(self) -> None:
        self._inbox = self._mp.Queue()
        self._outbox = self._mp.Queue()
        self._process = self._mp.Process(target=serve, args=(self._inbox, self._outbox), name="matte-worker", daemon=True)
        self._process.start()

    def _worker_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def _exit_detail(self) -> str:
        code = self._process.exitcode if self._process is not None else None
        return f"worker process exited (code={code})"

    def _join_worker(self) -> None:
        if self._process is None:
            return
        self._process.join(timeout=self.join_s)
        if self._process.is_alive():
            self._process.terminate()
            self._process.join(timeout=self.join_s)
