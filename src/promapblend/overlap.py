"""Automatic overlap detection from decoded correspondences.

Two projectors overlap where the camera sees both of them at the same pixel.
For every pair the shared camera pixels are mapped back into projector A's
frame; the bounding box of those projector pixels tells which edge of A the
overlap sits on and how wide it is.  Accepted overlaps are blended right away.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Sequence

import numpy as np

from .blending import BlendMask, OverlapEdge, OverlapRegion, apply_overlap_blend
from .config import OverlapConfig

if TYPE_CHECKING:
    from .session import ProjectorCalibration

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Bounds:
    """Inclusive bounding box in projector pixels."""

    min_x: int
    max_x: int
    min_y: int
    max_y: int

    @property
    def center(self) -> tuple[int, int]:
        return (self.min_x + self.max_x) // 2, (self.min_y + self.max_y) // 2

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y


def compute_bounds(points: np.ndarray | Iterable[tuple[int, int]]) -> Bounds:
    """Bounding box of (x, y) projector pixels."""
    pts = np.asarray(list(points) if not isinstance(points, np.ndarray) else points)
    if pts.size == 0:
        raise ValueError("Cannot compute bounds of an empty point set")
    pts = pts.reshape(-1, 2)
    return Bounds(
        min_x=int(pts[:, 0].min()),
        max_x=int(pts[:, 0].max()),
        min_y=int(pts[:, 1].min()),
        max_y=int(pts[:, 1].max()),
    )


def determine_overlap_edge(
    bounds: Bounds, proj_width: int, proj_height: int,
) -> OverlapEdge:
    """Which edge of the projector frame a region sits on.

    Offsets from the frame center are normalized per axis so projectors with
    a wide aspect ratio are not biased toward Left/Right.
    """
    center_x, center_y = bounds.center
    dx = center_x - proj_width // 2
    dy = center_y - proj_height // 2

    dx_norm = abs(dx) / proj_width
    dy_norm = abs(dy) / proj_height

    if dx_norm > dy_norm:
        return OverlapEdge.RIGHT if dx > 0 else OverlapEdge.LEFT
    return OverlapEdge.BOTTOM if dy > 0 else OverlapEdge.TOP


@dataclass
class OverlapDetectionResult:
    overlaps: list[OverlapRegion] = field(default_factory=list)
    # Aligned with the projector order passed to detect().
    blend_masks: list[BlendMask] = field(default_factory=list)
    projector_ids: list[int] = field(default_factory=list)

    def mask_for(self, projector_id: int) -> BlendMask:
        return self.blend_masks[self.projector_ids.index(projector_id)]

    def overlaps_for(self, projector_id: int) -> list[OverlapRegion]:
        return [
            o for o in self.overlaps
            if projector_id in (o.projector_a, o.projector_b)
        ]


class OverlapDetector:
    """Finds pairwise projector overlaps and builds their blend masks."""

    def __init__(self, config: OverlapConfig | None = None):
        self.config = config or OverlapConfig()

    def detect(
        self, projectors: Sequence[ProjectorCalibration],
    ) -> OverlapDetectionResult:
        result = OverlapDetectionResult(
            blend_masks=[
                BlendMask(p.projector_width, p.projector_height)
                for p in projectors
            ],
            projector_ids=[p.projector_id for p in projectors],
        )

        # Pairs are processed sequentially; two pairs may touch the same mask.
        for i in range(len(projectors)):
            for j in range(i + 1, len(projectors)):
                overlap = self.detect_pair(projectors[i], projectors[j])
                if overlap is None:
                    continue
                apply_overlap_blend(
                    result.blend_masks[i], result.blend_masks[j],
                    overlap, self.config.blend_curve,
                )
                result.overlaps.append(overlap)

        logger.info(
            "Overlap detection: %d projector(s), %d overlap(s)",
            len(projectors), len(result.overlaps),
        )
        return result

    def detect_pair(
        self,
        proj_a: ProjectorCalibration,
        proj_b: ProjectorCalibration,
    ) -> OverlapRegion | None:
        corr_a = proj_a.correspondences
        corr_b = proj_b.correspondences
        if corr_a is None or corr_b is None:
            return None

        if (
            corr_a.camera_width != corr_b.camera_width
            or corr_a.camera_height != corr_b.camera_height
        ):
            logger.warning(
                "Camera dimensions don't match between projector %d (%dx%d) "
                "and %d (%dx%d)",
                proj_a.projector_id, corr_a.camera_width, corr_a.camera_height,
                proj_b.projector_id, corr_b.camera_width, corr_b.camera_height,
            )
            return None

        shared = corr_a.usable_mask() & corr_b.usable_mask()
        n_shared = int(np.count_nonzero(shared))
        if n_shared == 0:
            logger.info(
                "No overlap detected between projector %d and %d",
                proj_a.projector_id, proj_b.projector_id,
            )
            return None

        logger.info(
            "Found %d overlapping camera pixels between projector %d and %d",
            n_shared, proj_a.projector_id, proj_b.projector_id,
        )

        bounds_a = compute_bounds(
            np.column_stack([corr_a.projector_x[shared], corr_a.projector_y[shared]]),
        )
        bounds_b = compute_bounds(
            np.column_stack([corr_b.projector_x[shared], corr_b.projector_y[shared]]),
        )
        logger.debug(
            "  bounds in projector %d: %s, in projector %d: %s",
            proj_a.projector_id, bounds_a, proj_b.projector_id, bounds_b,
        )
        edge = determine_overlap_edge(
            bounds_a, proj_a.projector_width, proj_a.projector_height,
        )

        span = bounds_a.width if edge.is_horizontal else bounds_a.height
        overlap_width = span + self.config.padding

        if overlap_width < self.config.min_overlap_width:
            logger.info(
                "Overlap width %d is below minimum %d, ignoring",
                overlap_width, self.config.min_overlap_width,
            )
            return None

        logger.info(
            "Detected %s overlap of %d pixels between projector %d and %d",
            edge.value, overlap_width, proj_a.projector_id, proj_b.projector_id,
        )
        return OverlapRegion(
            projector_a=proj_a.projector_id,
            projector_b=proj_b.projector_id,
            overlap_width=overlap_width,
            edge=edge,
        )
