from __future__ import annotations

from typing import List, Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


class LoadRequest(BaseModel):
    id: int
    type: Literal["load"] = "load"
    model_paths: List[str] = Field(default_factory=list)
    force_provider_fallback: bool = False


class SegmentRequest(BaseModel):
    """The image buffer belongs to the worker once posted; the sender must not reuse it."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: int
    type: Literal["segment"] = "segment"
    image: np.ndarray
    width: int
    height: int
    model_paths: List[str] = Field(default_factory=list)


class PhaseMessage(BaseModel):
    type: Literal["phase"] = "phase"
    phase: str
    detail: Optional[str] = None


class Response(BaseModel):
    """Exactly one per request id."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: int
    ok: bool
    alpha: Optional[np.ndarray] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


Request = Union[LoadRequest, SegmentRequest]
WorkerMessage = Union[PhaseMessage, Response]


class SegmentationResult(BaseModel):
    """Caller-facing result: RGBA buffer at original resolution (RGB = 0)."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    rgba: np.ndarray

    @property
    def alpha(self) -> np.ndarray:
        return self.rgba[..., 3]

    @property
    def width(self) -> int:
        return int(self.rgba.shape[1])

    @property
    def height(self) -> int:
        return int(self.rgba.shape[0])
