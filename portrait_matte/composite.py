from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image

from .config import REFINE_MAX_COVERAGE, REFINE_PAD_RATIO, REFINE_THRESHOLD
from .preprocess import LetterboxMeta


@dataclass(frozen=True)
class CropMeta:
    """Half-open pixel box [x0, x1) x [y0, y1) in original image coordinates."""

    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0


def compose_rgba(alpha: np.ndarray) -> np.ndarray:
    """
    Pack a single-channel mask into RGBA with RGB fixed at black.
    """
    if alpha.ndim != 2:
        raise ValueError(f"Expected 2D alpha, got shape={alpha.shape}")
    h, w = alpha.shape
    rgba = np.zeros((h, w, 4), dtype=np.uint8)
    rgba[..., 3] = alpha
    return rgba


def inject_alpha(rgb: np.ndarray, alpha: np.ndarray) -> Image.Image:
    """
    Create a lossless RGBA PIL image from RGB uint8 and a uint8 alpha mask.
    """
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
    if alpha.ndim != 2 or alpha.shape[:2] != rgb.shape[:2]:
        raise ValueError(f"Alpha shape {alpha.shape} does not match RGB {rgb.shape[:2]}")

    rgba = np.dstack([rgb, alpha.astype(np.uint8, copy=False)])
    return Image.fromarray(np.ascontiguousarray(rgba))


def foreground_bbox(alpha: np.ndarray, threshold: int = REFINE_THRESHOLD) -> Optional[Tuple[int, int, int, int]]:
    """
    Tight inclusive box (min_x, min_y, max_x, max_y) around alpha > threshold, or None.
    """
    ys, xs = np.where(alpha > threshold)
    if ys.size == 0 or xs.size == 0:
        return None
    return int(xs.min()), int(ys.min()), int(xs.max()), int(ys.max())


def refine_region(
    bbox: Tuple[int, int, int, int],
    meta: LetterboxMeta,
    pad_ratio: float = REFINE_PAD_RATIO,
    max_coverage: float = REFINE_MAX_COVERAGE,
) -> Optional[CropMeta]:
    """
    Map a mask-space box to a padded crop of the original image.

    Returns None when the crop is empty or would cover at least `max_coverage`
    of both original dimensions (a second pass would not focus compute).
    """
    min_x, min_y, max_x, max_y = bbox
    t = meta.target
    min_x, min_y = max(min_x, 0), max(min_y, 0)
    max_x, max_y = min(max_x, t - 1), min(max_y, t - 1)

    ox0 = max(0, math.floor((min_x - meta.dx) / meta.scale))
    ox1 = min(meta.orig_w - 1, math.ceil((max_x - meta.dx) / meta.scale))
    oy0 = max(0, math.floor((min_y - meta.dy) / meta.scale))
    oy1 = min(meta.orig_h - 1, math.ceil((max_y - meta.dy) / meta.scale))
    if ox1 < ox0 or oy1 < oy0:
        return None

    pad_x = int(round((ox1 - ox0 + 1) * pad_ratio))
    pad_y = int(round((oy1 - oy0 + 1) * pad_ratio))
    ox0 = max(0, ox0 - pad_x)
    ox1 = min(meta.orig_w - 1, ox1 + pad_x)
    oy0 = max(0, oy0 - pad_y)
    oy1 = min(meta.orig_h - 1, oy1 + pad_y)

    crop = CropMeta(x0=ox0, y0=oy0, x1=ox1 + 1, y1=oy1 + 1)
    if crop.width < meta.orig_w * max_coverage or crop.height < meta.orig_h * max_coverage:
        return crop
    return None


def merge_alpha(base_rgba: np.ndarray, patch_rgba: np.ndarray, crop: CropMeta) -> np.ndarray:
    """
    Overwrite only the alpha channel of `base_rgba` inside `crop` with `patch_rgba`'s alpha.
    """
    if patch_rgba.shape[:2] != (crop.height, crop.width):
        raise ValueError(f"Patch shape {patch_rgba.shape[:2]} does not match crop {(crop.height, crop.width)}")
    merged = base_rgba.copy()
    merged[crop.y0 : crop.y1, crop.x0 : crop.x1, 3] = patch_rgba[..., 3]
    return merged


def save_rgba_png(img: Image.Image, out_path: str) -> None:
    """
    Save as lossless RGBA PNG.
    """
    if img.mode != "RGBA":
        img = img.convert("RGBA")
    img.save(out_path, format="PNG", optimize=False)
