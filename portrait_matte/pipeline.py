from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .codec import pack_tensor, unpack_output
from .composite import compose_rgba, foreground_bbox, merge_alpha, refine_region
from .config import MAX_ATTEMPTS, TARGET_SIZE, get_watchdog_s
from .errors import AdaptiveFallbackExhausted, SegmentationFailed
from .events import Emit, null_emit
from .postprocess import raw_to_alpha, refine_alpha, restore_to_original
from .preprocess import LetterboxMeta, crop_image, letterbox
from .session import InferenceContext, SessionHandle

logger = logging.getLogger(__name__)


class Decision(enum.Enum):
    SUCCESS = "success"
    FALLBACK_AND_RETRY = "fallback_and_retry"
    FAIL = "fail"


@dataclass(frozen=True)
class Attempt:
    index: int = 1
    max_attempts: int = MAX_ATTEMPTS

    @property
    def has_remaining(self) -> bool:
        return self.index < self.max_attempts

    def next(self) -> "Attempt":
        return Attempt(index=self.index + 1, max_attempts=self.max_attempts)


@dataclass(frozen=True)
class PassResult:
    rgba: np.ndarray  # (orig_h, orig_w, 4), alpha in channel 3
    alpha_base: np.ndarray  # (target, target) mask before feathering
    meta: LetterboxMeta
    applied_sigmoid: bool


_TIMEOUT_RE = re.compile(r"timeout|timed out", re.IGNORECASE)


def looks_like_timeout(err: BaseException) -> bool:
    return isinstance(err, TimeoutError) or bool(_TIMEOUT_RE.search(str(err)))


def decide_after_run(
    *,
    provider_portable: bool,
    fallback_forced: bool,
    elapsed_s: float,
    watchdog_s: float,
    attempt: Attempt,
) -> Decision:
    """
    Slow inference on an accelerated provider triggers one degrade-and-retry.

    On the portable provider, or once the flag is set, slowness is accepted.
    """
    if provider_portable or fallback_forced:
        return Decision.SUCCESS
    if elapsed_s > watchdog_s and attempt.has_remaining:
        return Decision.FALLBACK_AND_RETRY
    return Decision.SUCCESS


def decide_after_error(
    *,
    provider_portable: bool,
    fallback_forced: bool,
    err: BaseException,
    attempt: Attempt,
) -> Decision:
    if provider_portable or fallback_forced:
        return Decision.FAIL
    if looks_like_timeout(err) or attempt.has_remaining:
        return Decision.FALLBACK_AND_RETRY
    return Decision.FAIL


def _input_geometry(handle: SessionHandle) -> int:
    """Fixed-size models get exactly their size; dynamic models always get TARGET_SIZE."""
    return handle.input_size() or TARGET_SIZE


def _log_io_shapes(handle: SessionHandle, emit: Emit) -> None:
    if handle.io_shapes_logged:
        return
    try:
        emit("io_shapes", f"{handle.input_names[0]}:{handle.output_names[0]}")
    except IndexError:
        pass
    handle.io_shapes_logged = True


def infer(
    handle: SessionHandle,
    rgb: np.ndarray,
    emit: Emit = null_emit,
    *,
    label: str = "infer_ms",
) -> Tuple[np.ndarray, LetterboxMeta, float]:
    """
    Letterbox, pack and run the model once.

    Returns the raw 2D output map, the letterbox meta and the wall-clock inference time.
    """
    # dynamic-dim exports need stride-aligned sides; the canvas never shrinks here
    canvas, meta = letterbox(rgb, _input_geometry(handle), force_exact=True)
    tensor = pack_tensor(canvas)

    t0 = time.perf_counter()
    outputs = handle.run(tensor)
    elapsed = time.perf_counter() - t0
    emit(label, f"{elapsed * 1000:.1f}")

    out_name = handle.output_names[0] if handle.output_names else "?"
    if not outputs or outputs[0] is None:
        emit("segment_fail", f"missing_output:{out_name}")
        raise RuntimeError("missing output tensor")
    return unpack_output(outputs[0]), meta, elapsed


def finish(raw: np.ndarray, meta: LetterboxMeta, emit: Emit = null_emit) -> PassResult:
    """Range-normalize, feather, composite and map back to original resolution."""
    alpha, applied = raw_to_alpha(raw, meta.target)
    if applied:
        emit("applied_sigmoid")
    refined = refine_alpha(alpha)
    rgba = restore_to_original(compose_rgba(refined), meta)
    return PassResult(rgba=rgba, alpha_base=alpha, meta=meta, applied_sigmoid=applied)


def fallback_and_rebuild(ctx: InferenceContext, sources: Sequence[str], emit: Emit, reason: str) -> SessionHandle:
    """
    Set the adaptive flag, drop the session and rebuild it on the portable provider.

    Raises:
        AdaptiveFallbackExhausted: when the rebuild fails.
    """
    emit("adaptive_fallback_trigger", reason)
    logger.warning("adaptive fallback: %s", reason)
    ctx.force_portable(reason)
    ctx.release()
    emit("adaptive_fallback_reinit", "cpu_only")
    try:
        handle = ctx.ensure_loaded(sources)
    except Exception as e:
        raise AdaptiveFallbackExhausted(f"fallback rebuild failed: {e}") from e
    emit("adaptive_fallback_retry")
    return handle


def refine_second_pass(handle: SessionHandle, rgb: np.ndarray, base: PassResult, emit: Emit = null_emit) -> np.ndarray:
    """
    Re-run the model on the padded subject crop and overwrite alpha inside it.

    Best effort: any failure keeps the base result.
    """
    try:
        bbox = foreground_bbox(base.alpha_base)
        if bbox is None:
            return base.rgba
        crop = refine_region(bbox, base.meta)
        if crop is None:
            return base.rgba

        emit("refine_pass2_start", f"{crop.width}x{crop.height}")
        sub = crop_image(rgb, crop.x0, crop.y0, crop.x1, crop.y1)
        raw, meta2, _elapsed = infer(handle, sub, emit, label="infer_ms_pass2")
        patch = finish(raw, meta2)
        merged = merge_alpha(base.rgba, patch.rgba, crop)
        emit("refine_pass2_done")
        return merged
    except Exception as e:  # noqa: BLE001 - second pass must never fail the request
        emit("refine_pass2_error", str(e) or type(e).__name__)
        logger.warning("second refinement pass failed: %s", e)
        return base.rgba


def segment_image(
    ctx: InferenceContext,
    rgb: np.ndarray,
    sources: Sequence[str],
    emit: Emit = null_emit,
    *,
    watchdog_s: Optional[float] = None,
    max_attempts: int = MAX_ATTEMPTS,
    two_pass: bool = True,
) -> np.ndarray:
    """
    Full request: ensure a session, base pass with watchdog/fallback, optional second pass.

    Returns:
      - uint8 RGBA (orig_h, orig_w, 4) with RGB = 0 and the matte in alpha

    Raises:
        SegmentationFailed: inference failed with no fallback left.
        AdaptiveFallbackExhausted: the portable rebuild failed.
    """
    watchdog_s = get_watchdog_s() if watchdog_s is None else watchdog_s
    handle = ctx.ensure_loaded(sources)
    _log_io_shapes(handle, emit)

    attempt = Attempt(index=1, max_attempts=max_attempts)
    while True:
        try:
            raw, meta, elapsed = infer(handle, rgb, emit)
            decision = decide_after_run(
                provider_portable=handle.is_portable,
                fallback_forced=ctx.fallback_forced,
                elapsed_s=elapsed,
                watchdog_s=watchdog_s,
                attempt=attempt,
            )
            if decision is Decision.SUCCESS:
                base = finish(raw, meta, emit)
                break
            reason = f"slow_inference_{elapsed * 1000:.0f}"
        except Exception as err:
            decision = decide_after_error(
                provider_portable=handle.is_portable,
                fallback_forced=ctx.fallback_forced,
                err=err,
                attempt=attempt,
            )
            if decision is Decision.FAIL:
                raise SegmentationFailed(str(err) or "segmentation failed") from err
            reason = f"{'timeout' if looks_like_timeout(err) else 'error'}:{err}"

        handle = fallback_and_rebuild(ctx, sources, emit, reason)
        attempt = attempt.next()

    if not two_pass:
        return base.rgba
    return refine_second_pass(handle, rgb, base, emit)
