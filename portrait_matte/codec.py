from __future__ import annotations

import numpy as np

from .config import NORM_MEAN, NORM_STD


def pack_tensor(img: np.ndarray) -> np.ndarray:
    """
    Normalize a uint8 RGB canvas into a planar float32 tensor (1,3,H,W).

    Each channel value becomes (raw/255 - 0.5) / 0.5, i.e. [-1, 1].
    """
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got shape={img.shape}")
    x = img.astype(np.float32) / 255.0
    x = (x - NORM_MEAN) / NORM_STD
    x = np.transpose(x, (2, 0, 1))  # CHW
    return np.ascontiguousarray(x[np.newaxis, ...], dtype=np.float32)  # NCHW


def unpack_output(y) -> np.ndarray:
    """
    Reduce a model output to a 2D float32 map.

    Matting models emit (1,1,H,W), (1,H,W) or (H,W); only the first channel is used.
    """
    y = np.asarray(y)
    if y.ndim == 4:
        y = y[0, 0]
    elif y.ndim == 3:
        y = y[0]
    elif y.ndim == 2:
        pass
    else:
        raise RuntimeError(f"Unexpected output tensor shape: {tuple(y.shape)}")
    return y.astype(np.float32, copy=False)
