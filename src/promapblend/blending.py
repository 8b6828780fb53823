"""Edge blend masks for multi-projector setups.

A mask starts fully opaque (1.0) and is attenuated multiplicatively by every
overlap its projector takes part in, so a projector with neighbours on both
sides accumulates both falloffs.

Within one blend zone the two projectors evaluate the same curve from
opposite sides (``t_a + t_b = 1``).  For curves with ``c(t) + c(1 - t) = 1``
(linear, smoothstep, cosine) their masks sum to 1.0 at every position.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import torch

from .config import BlendCurve

logger = logging.getLogger(__name__)

_GAMMA = 2.2


class OverlapEdge(str, Enum):
    LEFT = "left"
    RIGHT = "right"
    TOP = "top"
    BOTTOM = "bottom"

    @property
    def opposite(self) -> OverlapEdge:
        return _OPPOSITE[self]

    @property
    def is_horizontal(self) -> bool:
        return self in (OverlapEdge.LEFT, OverlapEdge.RIGHT)


_OPPOSITE = {
    OverlapEdge.LEFT: OverlapEdge.RIGHT,
    OverlapEdge.RIGHT: OverlapEdge.LEFT,
    OverlapEdge.TOP: OverlapEdge.BOTTOM,
    OverlapEdge.BOTTOM: OverlapEdge.TOP,
}


@dataclass(frozen=True, slots=True)
class OverlapRegion:
    """Shared region between two projectors.

    ``edge`` is the side of projector A's frame the region sits on.
    """

    projector_a: int
    projector_b: int
    overlap_width: int
    edge: OverlapEdge


def apply_curve(
    t: float | np.ndarray, curve: BlendCurve | str,
) -> float | np.ndarray:
    """Map normalized distance ``t`` in [0, 1] through a falloff curve.

    Works on floats and numpy arrays alike.
    """
    curve = BlendCurve(curve)
    if curve is BlendCurve.LINEAR:
        return t
    if curve is BlendCurve.SMOOTHSTEP:
        t2 = t * t
        return 3.0 * t2 - 2.0 * t * t2
    if curve is BlendCurve.COSINE:
        return 0.5 - 0.5 * np.cos(np.pi * t)
    if curve is BlendCurve.GAMMA:
        return np.power(t, _GAMMA)
    raise ValueError(f"Unknown blend curve: {curve!r}")


@dataclass
class BlendMask:
    """Per-projector alpha mask, row-major, values in [0, 1]."""

    width: int
    height: int
    data: np.ndarray = field(default=None)  # type: ignore[assignment]
    curve: BlendCurve | None = None

    def __post_init__(self) -> None:
        size = self.width * self.height
        if self.data is None:
            self.data = np.ones(size, dtype=np.float32)
        else:
            self.data = np.asarray(self.data, dtype=np.float32).ravel()
            if self.data.size != size:
                raise ValueError(
                    f"mask data has {self.data.size} entries, expected {size}"
                )

    def as_image(self) -> np.ndarray:
        """(height, width) view onto ``data``; writes go through."""
        return self.data.reshape(self.height, self.width)

    def reset(self) -> None:
        self.data.fill(1.0)
        self.curve = None

    # -- Edge falloffs --------------------------------------------------------

    def apply_right_blend(self, blend_width: int, curve: BlendCurve) -> None:
        if blend_width <= 0:
            return
        self.curve = curve
        start = max(self.width - blend_width, 0)
        t = (np.arange(start, self.width, dtype=np.float64) - start) / blend_width
        factor = 1.0 - apply_curve(t, curve)
        self.as_image()[:, start:] *= factor[np.newaxis, :].astype(np.float32)

    def apply_left_blend(self, blend_width: int, curve: BlendCurve) -> None:
        if blend_width <= 0:
            return
        self.curve = curve
        end = min(blend_width, self.width)
        t = 1.0 - np.arange(end, dtype=np.float64) / blend_width
        factor = 1.0 - apply_curve(t, curve)
        self.as_image()[:, :end] *= factor[np.newaxis, :].astype(np.float32)

    def apply_bottom_blend(self, blend_height: int, curve: BlendCurve) -> None:
        if blend_height <= 0:
            return
        self.curve = curve
        start = max(self.height - blend_height, 0)
        t = (np.arange(start, self.height, dtype=np.float64) - start) / blend_height
        factor = 1.0 - apply_curve(t, curve)
        self.as_image()[start:, :] *= factor[:, np.newaxis].astype(np.float32)

    def apply_top_blend(self, blend_height: int, curve: BlendCurve) -> None:
        if blend_height <= 0:
            return
        self.curve = curve
        end = min(blend_height, self.height)
        t = 1.0 - np.arange(end, dtype=np.float64) / blend_height
        factor = 1.0 - apply_curve(t, curve)
        self.as_image()[:end, :] *= factor[:, np.newaxis].astype(np.float32)

    def apply_edge(self, edge: OverlapEdge, width: int, curve: BlendCurve) -> None:
        if edge is OverlapEdge.RIGHT:
            self.apply_right_blend(width, curve)
        elif edge is OverlapEdge.LEFT:
            self.apply_left_blend(width, curve)
        elif edge is OverlapEdge.BOTTOM:
            self.apply_bottom_blend(width, curve)
        else:
            self.apply_top_blend(width, curve)

    # -- Output ---------------------------------------------------------------

    def to_uint8(self) -> np.ndarray:
        return (np.clip(self.as_image(), 0.0, 1.0) * 255.0).astype(np.uint8)

    def to_uint16(self) -> np.ndarray:
        return (np.clip(self.as_image(), 0.0, 1.0) * 65535.0).astype(np.uint16)

    def to_tensor(self, device: torch.device) -> torch.Tensor:
        """(1, H, W, 1) float32 alpha for the output compositor."""
        alpha = torch.from_numpy(self.as_image().copy())
        return alpha.unsqueeze(0).unsqueeze(-1).to(device)


def apply_overlap_blend(
    mask_a: BlendMask,
    mask_b: BlendMask,
    overlap: OverlapRegion,
    curve: BlendCurve,
) -> None:
    """Apply complementary falloffs so the pair sums to 1.0 in the overlap."""
    width = overlap.overlap_width
    mask_a.apply_edge(overlap.edge, width, curve)
    mask_b.apply_edge(overlap.edge.opposite, width, curve)
    logger.debug(
        "Blended projector %d (%s) with %d (%s) over %d px, curve=%s",
        overlap.projector_a, overlap.edge.value,
        overlap.projector_b, overlap.edge.opposite.value,
        width, BlendCurve(curve).value,
    )
