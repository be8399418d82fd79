"""
Centralized configuration constants for the portrait matting engine.

Ground rules:
- float32 tensors, batch size 1
- one inference session per worker
"""

from __future__ import annotations

import os

# Model input side used when the model does not declare a fixed spatial size.
TARGET_SIZE = 1024
# Never letterbox a small image into a canvas more than this much larger than it.
MAX_UPSAMPLE_RATIO = 1.15
PAD_COLOR = 0

NORM_MEAN = 0.5
NORM_STD = 0.5

# Number of raw output values inspected when deciding whether the model emits logits.
SIGMOID_PROBE = 512

FEATHER_RADIUS = 1
FEATHER_LOW = 15
FEATHER_HIGH = 240
FEATHER_KEEP = 0.6
GAMMA = 0.9

# Second pass: alpha > 24 (~10%) counts as foreground when locating the subject.
REFINE_THRESHOLD = 24
REFINE_PAD_RATIO = 0.12
REFINE_MAX_COVERAGE = 0.97

MAX_ATTEMPTS = 2
WATCHDOG_SLOW_S = 30.0
SEGMENT_TIMEOUT_S = 180.0
FETCH_TIMEOUT_S = 120.0
NUM_THREADS = 2

PORTABLE_PROVIDER = "CPUExecutionProvider"
HARDWARE_PROVIDERS = [
    "TensorrtExecutionProvider",
    "CUDAExecutionProvider",
    "ROCMExecutionProvider",
    "CoreMLExecutionProvider",
    "DmlExecutionProvider",
]
SOFTWARE_PROVIDERS = [
    "OpenVINOExecutionProvider",
    "DnnlExecutionProvider",
]

ENV_MODEL_URLS = "RMBG_MODEL_URLS"
ENV_MODEL_URL = "RMBG_MODEL_URL"
ENV_FORCE_CPU = "RMBG_FORCE_CPU"

QUERY_SINGLE_KEYS = ("model", "modelUrl")
QUERY_LIST_KEYS = ("models", "modelUrls")
QUERY_FORCE_CPU_KEYS = ("cpuonly", "cpu")


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def get_watchdog_s() -> float:
    return _get_float("RMBG_WATCHDOG_S", WATCHDOG_SLOW_S)


def get_segment_timeout_s() -> float:
    return _get_float("RMBG_SEGMENT_TIMEOUT_S", SEGMENT_TIMEOUT_S)


def get_fetch_timeout_s() -> float:
    return _get_float("RMBG_FETCH_TIMEOUT_S", FETCH_TIMEOUT_S)


def get_num_threads() -> int:
    """
    Intra-op thread count for CPU execution.

    Hosts that cannot allow extra compute threads set RMBG_ALLOW_THREADS=0; the
    session then runs single-threaded instead of failing.
    """
    if not _get_bool("RMBG_ALLOW_THREADS", True):
        return 1
    try:
        n = int(os.getenv("RMBG_NUM_THREADS", str(NUM_THREADS)))
    except ValueError:
        return NUM_THREADS
    return max(1, n)


def get_force_cpu() -> bool:
    return _get_bool(ENV_FORCE_CPU, False)
