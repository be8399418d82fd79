from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np
from PIL import Image

from .config import MAX_UPSAMPLE_RATIO, PAD_COLOR, TARGET_SIZE


@dataclass(frozen=True)
class LetterboxMeta:
    """Metadata required to map model-space outputs back to original image space."""

    orig_w: int
    orig_h: int
    scale: float
    dx: int
    dy: int
    target: int = TARGET_SIZE

    @property
    def scaled_w(self) -> int:
        return _scaled_side(self.orig_w, self.scale, self.target)

    @property
    def scaled_h(self) -> int:
        return _scaled_side(self.orig_h, self.scale, self.target)


def _scaled_side(n: int, scale: float, target: int) -> int:
    return min(target, max(1, int(round(n * scale))))


def load_image(path: str) -> np.ndarray:
    """
    Load an image as RGB uint8 ndarray of shape (H, W, 3).
    """
    bgr = cv2.imread(path, cv2.IMREAD_COLOR)
    if bgr is None:
        raise FileNotFoundError(f"Could not read image: {path}")
    rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
    if rgb.dtype != np.uint8:
        rgb = rgb.astype(np.uint8, copy=False)
    return rgb


def to_rgb_array(image) -> np.ndarray:
    """
    Accept a PIL image or an (H,W,3)/(H,W,4) uint8 array and return contiguous RGB uint8.
    """
    if isinstance(image, Image.Image):
        image = np.array(image.convert("RGB"), dtype=np.uint8)
    arr = np.asarray(image)
    if arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise ValueError(f"Expected RGB image (H,W,3), got shape={arr.shape}")
    if arr.shape[2] == 4:
        arr = arr[..., :3]
    if arr.dtype != np.uint8:
        arr = arr.astype(np.uint8)
    return np.ascontiguousarray(arr)


def compute_letterbox(orig_w: int, orig_h: int, target: int = TARGET_SIZE, force_exact: bool = False) -> LetterboxMeta:
    """
    Scale/offset for fitting (orig_w, orig_h) centered inside a target x target canvas.

    Unless force_exact, the canvas shrinks to round(max_dim * 1.15) when it would
    otherwise blow a small image up by more than that ratio.
    """
    if orig_w <= 0 or orig_h <= 0:
        raise ValueError(f"Invalid image size: {(orig_w, orig_h)}")
    if target <= 0:
        raise ValueError(f"Invalid target size: {target}")

    max_dim = max(orig_w, orig_h)
    if not force_exact and target > max_dim * MAX_UPSAMPLE_RATIO:
        target = max(1, int(round(max_dim * MAX_UPSAMPLE_RATIO)))

    scale = float(target) / float(max_dim)
    scaled_w = _scaled_side(orig_w, scale, target)
    scaled_h = _scaled_side(orig_h, scale, target)
    dx = (target - scaled_w) // 2
    dy = (target - scaled_h) // 2
    return LetterboxMeta(orig_w=orig_w, orig_h=orig_h, scale=scale, dx=dx, dy=dy, target=target)


def letterbox(img: np.ndarray, target: int = TARGET_SIZE, force_exact: bool = False) -> Tuple[np.ndarray, LetterboxMeta]:
    """
    Aspect-safe resize into a centered (target, target) canvas padded with PAD_COLOR.

    Returns:
      - canvas: uint8 ndarray (target, target, 3)
      - meta: LetterboxMeta for the inverse transform
    """
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got shape={img.shape}")

    orig_h, orig_w = img.shape[:2]
    meta = compute_letterbox(orig_w, orig_h, target=target, force_exact=force_exact)

    interp = cv2.INTER_AREA if meta.scale < 1 else cv2.INTER_CUBIC
    resized = cv2.resize(img, (meta.scaled_w, meta.scaled_h), interpolation=interp)

    canvas = np.full((meta.target, meta.target, 3), PAD_COLOR, dtype=np.uint8)
    canvas[meta.dy : meta.dy + meta.scaled_h, meta.dx : meta.dx + meta.scaled_w] = resized
    return canvas, meta


def crop_image(img: np.ndarray, x0: int, y0: int, x1: int, y1: int) -> np.ndarray:
    """Inclusive-exclusive crop returning a contiguous copy."""
    return np.ascontiguousarray(img[y0:y1, x0:x1])
