"""
Isolated-context side of the engine.

The worker owns the `InferenceContext`, handles one request to completion
(including fallback retries) before reading the next, and answers every request
id with exactly one `Response`. Progress is reported as `PhaseMessage`s.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .contracts import LoadRequest, PhaseMessage, Response, SegmentRequest, WorkerMessage
from .errors import error_kind
from .pipeline import segment_image
from .preprocess import to_rgb_array
from .session import InferenceContext

logger = logging.getLogger(__name__)

Post = Callable[[WorkerMessage], None]


class InferenceWorker:
    def __init__(self, post: Post, make_context: Callable[..., InferenceContext] = InferenceContext):
        self._post = post
        self.context = make_context(emit=self.post_phase)

    def post_phase(self, phase: str, detail: Optional[str] = None) -> None:
        self._post(PhaseMessage(phase=phase, detail=detail))

    def handle(self, msg) -> None:
        req_id = getattr(msg, "id", -1)
        try:
            if isinstance(msg, LoadRequest):
                self._handle_load(msg)
                self._post(Response(id=req_id, ok=True))
                return
            if isinstance(msg, SegmentRequest):
                rgba = self._handle_segment(msg)
                self._post(Response(id=req_id, ok=True, alpha=rgba))
                return
            raise ValueError(f"Unknown request: {type(msg).__name__}")
        except Exception as err:
            message = str(err) or "segmentation error"
            logger.warning("request %s failed: %s", req_id, message)
            self.post_phase("error", message)
            self._post(Response(id=req_id, ok=False, error=message, error_kind=error_kind(err)))

    def _handle_load(self, msg: LoadRequest) -> None:
        if msg.force_provider_fallback:
            self.context.force_portable("requested")
            handle = self.context.handle
            if handle is not None and not handle.is_portable:
                self.context.release()
        self.context.ensure_loaded(msg.model_paths)

    def _handle_segment(self, msg: SegmentRequest):
        rgb = to_rgb_array(msg.image)
        if rgb.shape[:2] != (msg.height, msg.width):
            raise ValueError(f"Image shape {rgb.shape[:2]} does not match declared {(msg.height, msg.width)}")
        return segment_image(self.context, rgb, msg.model_paths, self.post_phase)


def serve(inbox, outbox, make_worker: Optional[Callable[[Post], InferenceWorker]] = None) -> None:
    """
    Worker loop: read requests until a None sentinel arrives.

    `inbox`/`outbox` are queue.Queue or multiprocessing queues.
    """
    worker = (make_worker or InferenceWorker)(outbox.put)
    worker.post_phase("boot", "worker_online")
    while True:
        msg = inbox.get()
        if msg is None:
            break
        worker.handle(msg)
