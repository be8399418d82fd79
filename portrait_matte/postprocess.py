from __future__ import annotations

import cv2
import numpy as np

from .config import FEATHER_HIGH, FEATHER_KEEP, FEATHER_LOW, FEATHER_RADIUS, GAMMA, SIGMOID_PROBE
from .preprocess import LetterboxMeta


def needs_sigmoid(raw: np.ndarray, probe: int = SIGMOID_PROBE) -> bool:
    """
    True when any of the first `probe` values lies outside [0, 1].

    The decision is made once for the whole tensor: a model either emits
    probabilities or logits, never a mix.
    """
    head = np.asarray(raw).reshape(-1)[:probe]
    return bool(np.any((head < 0.0) | (head > 1.0)))


def sigmoid(x: np.ndarray) -> np.ndarray:
    with np.errstate(over="ignore"):
        return (1.0 / (1.0 + np.exp(-x))).astype(np.float32, copy=False)


def fit_to_canvas(y: np.ndarray, target: int) -> np.ndarray:
    """Some models output at a different scale; bring the map back to target x target."""
    if y.shape[-2:] == (target, target):
        return y
    return cv2.resize(y.astype(np.float32, copy=False), (target, target), interpolation=cv2.INTER_LINEAR)


def quantize_alpha(y: np.ndarray) -> np.ndarray:
    """
    Map a [0,1] float map to uint8. Out-of-range values are clamped, non-finite become 0.
    """
    v = np.where(np.isfinite(y), y, 0.0)
    v = np.clip(v, 0.0, 1.0) * 255.0
    return np.rint(v).astype(np.uint8)


def gaussian_kernel(radius: int) -> np.ndarray:
    sigma = float(radius)
    xs = np.arange(-radius, radius + 1, dtype=np.float64)
    k = np.exp(-(xs * xs) / (2.0 * sigma * sigma))
    return (k / k.sum()).astype(np.float32)


def gaussian_blur_alpha(alpha: np.ndarray, radius: int = FEATHER_RADIUS) -> np.ndarray:
    """
    Separable Gaussian blur (sigma = radius) with edge replication, rounded back to uint8.
    """
    if radius <= 0:
        return alpha.copy()
    k = gaussian_kernel(radius)
    out = cv2.sepFilter2D(
        alpha.astype(np.float32),
        cv2.CV_32F,
        k,
        k,
        borderType=cv2.BORDER_REPLICATE,
    )
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


def feather_boundary(alpha: np.ndarray, radius: int = FEATHER_RADIUS) -> np.ndarray:
    """
    Blend the blurred mask into the uncertain band only.

    Pixels with FEATHER_LOW < v < FEATHER_HIGH become floor(0.6*v + 0.4*blur);
    confident foreground/background is left untouched.
    """
    if alpha.ndim != 2:
        raise ValueError(f"Expected 2D alpha, got shape={alpha.shape}")
    orig = alpha.astype(np.float64)
    blurred = gaussian_blur_alpha(alpha, radius).astype(np.float64)
    band = (alpha > FEATHER_LOW) & (alpha < FEATHER_HIGH)
    mixed = np.floor(orig * FEATHER_KEEP + blurred * (1.0 - FEATHER_KEEP))
    out = alpha.copy()
    out[band] = mixed[band].astype(np.uint8)
    return out


def apply_gamma(alpha: np.ndarray, gamma: float = GAMMA) -> np.ndarray:
    """Global midtone lift: v' = 255 * (v/255) ** gamma."""
    v = alpha.astype(np.float64) / 255.0
    return np.clip(np.rint(np.power(v, gamma) * 255.0), 0, 255).astype(np.uint8)


def refine_alpha(alpha: np.ndarray) -> np.ndarray:
    return apply_gamma(feather_boundary(alpha))


def raw_to_alpha(raw: np.ndarray, target: int) -> tuple[np.ndarray, bool]:
    """
    Range-normalize and quantize a 2D model output.

    Returns:
      - alpha: uint8 (target, target), before feathering
      - applied_sigmoid: whether the output was treated as logits
    """
    applied = needs_sigmoid(raw)
    y = sigmoid(raw) if applied else raw
    y = fit_to_canvas(y, target)
    return quantize_alpha(y), applied


def restore_to_original(buf: np.ndarray, meta: LetterboxMeta) -> np.ndarray:
    """
    Restore a model-space square buffer back to original image resolution.

    Steps:
      1) remove padding using dx/dy offsets + scaled sizes
      2) resize back to (orig_w, orig_h)
    """
    if buf.ndim not in (2, 3):
        raise ValueError(f"Expected 2D mask or (H,W,C) buffer, got shape={buf.shape}")

    x0, y0 = meta.dx, meta.dy
    x1, y1 = x0 + meta.scaled_w, y0 + meta.scaled_h
    cropped = buf[y0:y1, x0:x1]
    if cropped.size == 0:
        raise ValueError("Mask crop is empty; check letterbox meta.")

    restored = cv2.resize(cropped, (meta.orig_w, meta.orig_h), interpolation=cv2.INTER_LINEAR)
    if buf.ndim == 3 and restored.ndim == 2:
        restored = restored[..., np.newaxis]
    return restored
