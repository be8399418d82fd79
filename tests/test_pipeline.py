from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np
import pytest

from portrait_matte import session as session_mod
from portrait_matte.errors import AdaptiveFallbackExhausted, SegmentationFailed
from portrait_matte.pipeline import (
    Attempt,
    Decision,
    decide_after_error,
    decide_after_run,
    looks_like_timeout,
    segment_image,
)
from portrait_matte.session import InferenceContext, SessionHandle

ACCEL = "CUDAExecutionProvider"
CPU = "CPUExecutionProvider"


@dataclass
class _Node:
    name: str
    shape: list = field(default_factory=lambda: [1, 3, "h", "w"])


class _FakeMattingSession:
    """Foreground wherever the red channel is bright; optional per-call overrides."""

    def __init__(self, input_shape: Optional[list] = None, on_call: Optional[Callable[[int, np.ndarray], object]] = None):
        self.input_shape = input_shape or [1, 3, "h", "w"]
        self.on_call = on_call
        self.shapes: List[tuple] = []

    def get_inputs(self):
        return [_Node("input", self.input_shape)]

    def run(self, names, feeds):
        x = feeds["input"]
        self.shapes.append(x.shape)
        if self.on_call is not None:
            override = self.on_call(len(self.shapes), x)
            if override is not None:
                return override
        return [(x[:, :1] > 0).astype(np.float32)]


class _Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, phase: str, detail: str = "") -> None:
        self.events.append((phase, detail))

    def phases(self) -> List[str]:
        return [p for p, _ in self.events]


def _install(monkeypatch, build: Callable[[bool], SessionHandle]) -> List[bool]:
    builds: List[bool] = []

    def _create(data, force_portable=False, emit=None):
        builds.append(force_portable)
        return build(force_portable)

    monkeypatch.setattr(session_mod, "fetch_model_bytes", lambda src, timeout=None: b"m")
    monkeypatch.setattr(session_mod, "create_session", _create)
    return builds


def _handle(sess, provider: str = CPU) -> SessionHandle:
    return SessionHandle(session=sess, active_provider=provider, input_names=["input"], output_names=["output"])


def _portrait(h: int = 300, w: int = 200) -> np.ndarray:
    img = np.zeros((h, w, 3), dtype=np.uint8)
    img[100:200, 60:140] = 255
    return img


def _run(monkeypatch, sess, rgb, **kwargs):
    _install(monkeypatch, lambda forced: _handle(sess))
    rec = _Recorder()
    ctx = InferenceContext(emit=rec)
    out = segment_image(ctx, rgb, ["m.onnx"], rec, **kwargs)
    return out, rec


def test_base_pass_produces_original_size_matte(monkeypatch):
    sess = _FakeMattingSession()
    out, rec = _run(monkeypatch, sess, _portrait(), two_pass=False)

    assert out.shape == (300, 200, 4)
    assert out.dtype == np.uint8
    assert (out[..., :3] == 0).all()
    assert (out[120:180, 80:120, 3] == 255).all()
    assert (out[:80, :, 3] == 0).all()
    # dynamic-dim models always see the full canvas, even for small inputs
    assert sess.shapes == [(1, 3, 1024, 1024)]
    assert "io_shapes" in rec.phases()
    assert "infer_ms" in rec.phases()


def test_small_inputs_keep_stride_aligned_canvas_on_both_passes(monkeypatch):
    def _stride_32_only(n, x):
        h, w = x.shape[2:]
        if h % 32 or w % 32:
            raise RuntimeError(f"Concat: dims mismatch for input {x.shape}")
        return None

    sess = _FakeMattingSession(on_call=_stride_32_only)
    out, rec = _run(monkeypatch, sess, _portrait())

    assert sess.shapes == [(1, 3, 1024, 1024), (1, 3, 1024, 1024)]
    assert "refine_pass2_done" in rec.phases()
    assert "refine_pass2_error" not in rec.phases()
    assert out[150, 100, 3] == 255


def test_logit_outputs_are_squashed(monkeypatch):
    sess = _FakeMattingSession(on_call=lambda n, x: [x[:, :1] * 6.0])
    out, rec = _run(monkeypatch, sess, _portrait(), two_pass=False)
    assert "applied_sigmoid" in rec.phases()
    assert out[150, 100, 3] > 240
    assert out[10, 10, 3] < 15


def test_second_pass_only_rewrites_alpha_inside_crop(monkeypatch):
    base, _ = _run(monkeypatch, _FakeMattingSession(), _portrait(), two_pass=False)

    def _second_pass_all_foreground(n, x):
        if n == 2:
            return [np.ones((1, 1) + x.shape[2:], dtype=np.float32)]
        return None

    sess = _FakeMattingSession(on_call=_second_pass_all_foreground)
    out, rec = _run(monkeypatch, sess, _portrait())

    assert len(sess.shapes) == 2
    assert rec.phases()[-3:] == ["refine_pass2_start", "infer_ms_pass2", "refine_pass2_done"]
    # crop is the subject box padded by ~12 px vertically and ~10 px horizontally
    assert (out[95:205, 55:145, 3] == 255).all()
    assert (out[:80, :, 3] == base[:80, :, 3]).all()
    assert (out[220:, :, 3] == base[220:, :, 3]).all()
    assert (out[:, :40, 3] == base[:, :40, 3]).all()
    assert (out[..., :3] == 0).all()


def test_second_pass_failure_keeps_base_result(monkeypatch):
    base, _ = _run(monkeypatch, _FakeMattingSession(), _portrait(), two_pass=False)

    def _boom_on_second(n, x):
        if n == 2:
            raise RuntimeError("out of memory")
        return None

    out, rec = _run(monkeypatch, _FakeMattingSession(on_call=_boom_on_second), _portrait())

    assert (out == base).all()
    assert ("refine_pass2_error", "out of memory") in rec.events


def test_no_foreground_skips_second_pass(monkeypatch):
    sess = _FakeMattingSession()
    out, rec = _run(monkeypatch, sess, np.zeros((120, 90, 3), dtype=np.uint8))
    assert len(sess.shapes) == 1
    assert (out[..., 3] == 0).all()
    assert "refine_pass2_start" not in rec.phases()


def test_full_frame_subject_skips_second_pass(monkeypatch):
    sess = _FakeMattingSession()
    _run(monkeypatch, sess, np.full((120, 90, 3), 255, dtype=np.uint8))
    assert len(sess.shapes) == 1


def test_fixed_input_models_get_exact_geometry(monkeypatch):
    sess = _FakeMattingSession(input_shape=[1, 3, 64, 64])
    out, _ = _run(monkeypatch, sess, _portrait(50, 100), two_pass=False)
    assert sess.shapes == [(1, 3, 64, 64)]
    assert out.shape == (50, 100, 4)


def test_slow_accelerated_run_falls_back_to_cpu(monkeypatch):
    sessions = {False: _FakeMattingSession(), True: _FakeMattingSession()}
    builds = _install(monkeypatch, lambda forced: _handle(sessions[forced], CPU if forced else ACCEL))
    rec = _Recorder()
    ctx = InferenceContext(emit=rec)

    out = segment_image(ctx, _portrait(), ["m.onnx"], rec, watchdog_s=-1.0, two_pass=False)

    assert builds == [False, True]
    assert ctx.fallback_forced is True
    assert len(sessions[False].shapes) == 1
    assert len(sessions[True].shapes) == 1
    phases = rec.phases()
    trigger = phases.index("adaptive_fallback_trigger")
    assert phases[trigger + 1] == "force_cpu_only"
    assert phases.index("adaptive_fallback_reinit") < phases.index("adaptive_fallback_retry")
    assert rec.events[trigger][1].startswith("slow_inference_")
    assert out.shape == (300, 200, 4)


def test_slow_run_on_cpu_is_accepted(monkeypatch):
    sess = _FakeMattingSession()
    out, rec = _run(monkeypatch, sess, _portrait(), watchdog_s=-1.0, two_pass=False)
    assert len(sess.shapes) == 1
    assert "adaptive_fallback_trigger" not in rec.phases()
    assert out.shape == (300, 200, 4)


def test_accelerated_error_retries_on_cpu(monkeypatch):
    def _fail(n, x):
        raise RuntimeError("CUDA error: device lost")

    sessions = {False: _FakeMattingSession(on_call=_fail), True: _FakeMattingSession()}
    builds = _install(monkeypatch, lambda forced: _handle(sessions[forced], CPU if forced else ACCEL))
    rec = _Recorder()

    out = segment_image(InferenceContext(emit=rec), _portrait(), ["m.onnx"], rec, two_pass=False)

    assert builds == [False, True]
    trigger = [d for p, d in rec.events if p == "adaptive_fallback_trigger"]
    assert trigger == ["error:CUDA error: device lost"]
    assert out[150, 100, 3] == 255


def test_error_on_cpu_fails_without_retry(monkeypatch):
    def _fail(n, x):
        raise RuntimeError("bad node")

    sess = _FakeMattingSession(on_call=_fail)
    with pytest.raises(SegmentationFailed, match="bad node"):
        _run(monkeypatch, sess, _portrait())
    assert len(sess.shapes) == 1


def test_failed_rebuild_is_reported(monkeypatch):
    def _build(forced):
        if forced:
            raise RuntimeError("cpu provider unavailable")
        return _handle(_FakeMattingSession(), ACCEL)

    _install(monkeypatch, _build)
    rec = _Recorder()
    with pytest.raises(AdaptiveFallbackExhausted):
        segment_image(InferenceContext(emit=rec), _portrait(), ["m.onnx"], rec, watchdog_s=-1.0)
    assert "adaptive_fallback_retry" not in rec.phases()


def test_missing_output_tensor(monkeypatch):
    sess = _FakeMattingSession(on_call=lambda n, x: [None])
    with pytest.raises(SegmentationFailed, match="missing output tensor"):
        _run(monkeypatch, sess, _portrait())


def test_decide_after_run():
    first, last = Attempt(1, 2), Attempt(2, 2)
    kw = dict(fallback_forced=False, watchdog_s=30.0)
    assert decide_after_run(provider_portable=False, elapsed_s=31.0, attempt=first, **kw) is Decision.FALLBACK_AND_RETRY
    assert decide_after_run(provider_portable=False, elapsed_s=30.0, attempt=first, **kw) is Decision.SUCCESS
    assert decide_after_run(provider_portable=False, elapsed_s=99.0, attempt=last, **kw) is Decision.SUCCESS
    assert decide_after_run(provider_portable=True, elapsed_s=99.0, attempt=first, **kw) is Decision.SUCCESS
    assert (
        decide_after_run(provider_portable=False, fallback_forced=True, elapsed_s=99.0, watchdog_s=30.0, attempt=first)
        is Decision.SUCCESS
    )


def test_decide_after_error():
    first, last = Attempt(1, 2), Attempt(2, 2)
    err = RuntimeError("kernel crashed")
    slow = RuntimeError("Operation timed out")
    assert decide_after_error(provider_portable=False, fallback_forced=False, err=err, attempt=first) is Decision.FALLBACK_AND_RETRY
    assert decide_after_error(provider_portable=False, fallback_forced=False, err=err, attempt=last) is Decision.FAIL
    assert decide_after_error(provider_portable=False, fallback_forced=False, err=slow, attempt=last) is Decision.FALLBACK_AND_RETRY
    assert decide_after_error(provider_portable=True, fallback_forced=False, err=slow, attempt=first) is Decision.FAIL
    assert decide_after_error(provider_portable=False, fallback_forced=True, err=err, attempt=first) is Decision.FAIL


def test_looks_like_timeout():
    assert looks_like_timeout(TimeoutError())
    assert looks_like_timeout(RuntimeError("request TIMEOUT after 30s"))
    assert not looks_like_timeout(RuntimeError("shape mismatch"))
    assert Attempt().has_remaining and not Attempt().next().has_remaining
