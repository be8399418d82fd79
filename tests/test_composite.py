from __future__ import annotations

import numpy as np

from portrait_matte.composite import (
    CropMeta,
    compose_rgba,
    foreground_bbox,
    inject_alpha,
    merge_alpha,
    refine_region,
)
from portrait_matte.preprocess import compute_letterbox


def test_compose_rgba_keeps_rgb_black():
    alpha = np.arange(12, dtype=np.uint8).reshape(3, 4)
    rgba = compose_rgba(alpha)
    assert rgba.shape == (3, 4, 4)
    assert (rgba[..., :3] == 0).all()
    assert (rgba[..., 3] == alpha).all()


def test_foreground_bbox_threshold_is_exclusive():
    alpha = np.zeros((10, 10), dtype=np.uint8)
    alpha[2, 3] = 24
    assert foreground_bbox(alpha) is None
    alpha[4, 6] = 25
    alpha[7, 1] = 200
    assert foreground_bbox(alpha) == (1, 4, 6, 7)


def test_refine_region_maps_pads_and_clamps():
    # 400x800 portrait in an exact 1024 canvas: scale 1.28, dx 256, dy 0
    meta = compute_letterbox(400, 800, 1024, force_exact=True)
    assert (meta.dx, meta.dy) == (256, 0)

    crop = refine_region((356, 100, 555, 700), meta)

    # box maps to x [78, 234], y [78, 547]; padding 12% -> 19 / 56
    assert crop == CropMeta(x0=59, y0=22, x1=254, y1=604)


def test_refine_region_skips_full_frame_subjects():
    meta = compute_letterbox(400, 800, 1024, force_exact=True)
    assert refine_region((256, 0, 767, 1023), meta) is None


def test_refine_region_skips_boxes_inside_padding():
    meta = compute_letterbox(400, 800, 1024, force_exact=True)
    # left and right pad bands map outside the image columns
    assert refine_region((10, 10, 50, 50), meta) is None
    assert refine_region((900, 10, 1000, 50), meta) is None


def test_merge_alpha_overwrites_only_alpha_inside_crop():
    base = np.full((6, 8, 4), 10, dtype=np.uint8)
    patch = np.full((2, 3, 4), 99, dtype=np.uint8)
    crop = CropMeta(x0=4, y0=1, x1=7, y1=3)

    merged = merge_alpha(base, patch, crop)

    assert (merged[..., :3] == 10).all()
    assert (merged[1:3, 4:7, 3] == 99).all()
    outside = np.ones((6, 8), dtype=bool)
    outside[1:3, 4:7] = False
    assert (merged[..., 3][outside] == 10).all()
    assert (base[..., 3] == 10).all()


def test_inject_alpha_builds_rgba_image():
    rgb = np.full((5, 4, 3), 200, dtype=np.uint8)
    alpha = np.zeros((5, 4), dtype=np.uint8)
    alpha[2, 2] = 255
    img = inject_alpha(rgb, alpha)
    assert img.mode == "RGBA"
    assert img.size == (4, 5)
    assert img.getpixel((2, 2)) == (200, 200, 200, 255)
