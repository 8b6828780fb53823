"""Settings and project configuration.

All settings are immutable once constructed and are passed by reference into
the stateless decoder, estimator and detector.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class BlendCurve(str, Enum):
    """Falloff curve used across a blend zone."""

    LINEAR = "linear"
    SMOOTHSTEP = "smoothstep"
    COSINE = "cosine"
    GAMMA = "gamma"


# =============================================================================
# Engine settings
# =============================================================================


class DecoderSettings(BaseModel):
    """Thresholds for Gray code decoding.

    Intensities are normalised to [0, 1] before any threshold is applied.
    """

    model_config = ConfigDict(frozen=True)

    contrast_threshold: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description=(
            "Minimum white-minus-black difference for a camera pixel to count "
            "as lit by the projector."
        ),
    )
    bit_threshold: float = Field(
        default=0.02,
        ge=0.0,
        le=1.0,
        description=(
            "Minimum |normal - inverted| for a gating bit to be trusted. "
            "Rejects pixels sitting on a stripe boundary."
        ),
    )
    msb_gate_bits: int = Field(
        default=2,
        ge=0,
        le=16,
        description="Number of most significant bits that gate validity.",
    )
    spatial_consistency: bool = Field(
        default=False,
        description=(
            "Reject pixels whose decoded coordinates disagree with the local "
            "mean of their valid neighbours."
        ),
    )
    consistency_kernel: int = Field(
        default=5,
        ge=3,
        le=31,
        description="Box kernel size for the consistency filter (made odd).",
    )
    consistency_max_diff: float = Field(
        default=3.0,
        gt=0.0,
        description="Max deviation from the local mean, in projector pixels.",
    )


class HomographySettings(BaseModel):
    """RANSAC homography fitting parameters."""

    model_config = ConfigDict(frozen=True)

    ransac_threshold: float = Field(
        default=3.0, gt=0.0, description="Reprojection threshold in pixels.",
    )
    max_iters: int = Field(
        default=2000, ge=1, description="Maximum RANSAC iterations.",
    )
    confidence: float = Field(
        default=0.995, gt=0.0, lt=1.0, description="RANSAC confidence level.",
    )
    min_points: int = Field(
        default=100, ge=4, description="Minimum point pairs required for a fit.",
    )
    sample_stride: int = Field(
        default=4,
        ge=1,
        description="Sample every Nth camera pixel along each axis.",
    )
    min_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Correspondences must have confidence above this value.",
    )


class OverlapConfig(BaseModel):
    """Overlap detection and blend generation parameters."""

    model_config = ConfigDict(frozen=True)

    min_overlap_width: int = Field(
        default=10,
        ge=0,
        description="Overlaps narrower than this (pixels) are discarded as noise.",
    )
    blend_curve: BlendCurve = Field(
        default=BlendCurve.SMOOTHSTEP,
        description="Falloff curve for generated masks.",
    )
    padding: int = Field(
        default=0,
        ge=0,
        description="Pixels added to every detected overlap width.",
    )


class SessionSettings(BaseModel):
    """Timing and capture parameters for the interactive workflow."""

    model_config = ConfigDict(frozen=True)

    settle_time_ms: float = Field(
        default=100.0,
        ge=0.0,
        description="Time the projector needs to show a new pattern.",
    )
    frames_to_average: int = Field(
        default=3,
        ge=1,
        le=30,
        description="Camera frames averaged per pattern.",
    )
    brightness: int = Field(
        default=255,
        ge=10,
        le=255,
        description="Brightness of white stripes and the white reference.",
    )


# =============================================================================
# Project file
# =============================================================================


class BlendConfig(BaseModel):
    """Per-edge blend widths for one projector."""

    left_width: int = Field(default=0, ge=0)
    right_width: int = Field(default=0, ge=0)
    top_width: int = Field(default=0, ge=0)
    bottom_width: int = Field(default=0, ge=0)
    curve: BlendCurve = BlendCurve.SMOOTHSTEP


class ProjectorConfig(BaseModel):
    id: int = 1
    name: str = "Projector 1"
    width: int = Field(default=1920, ge=1, le=7680)
    height: int = Field(default=1080, ge=1, le=4320)
    display_index: int = Field(default=0, ge=0)
    canvas_x: int = 0
    canvas_y: int = 0
    # Camera -> projector homography, row-major.
    homography: Annotated[list[float], Field(min_length=9, max_length=9)] | None = None
    blend: BlendConfig = Field(default_factory=BlendConfig)


class ProjectConfig(BaseModel):
    name: str = "New Project"
    canvas_width: int = Field(default=1920, ge=1)
    canvas_height: int = Field(default=1080, ge=1)
    projectors: list[ProjectorConfig] = Field(
        default_factory=lambda: [ProjectorConfig()],
    )
    camera_source: str | None = None


def save_project(project: ProjectConfig, path: str | Path) -> None:
    """Write a project file as indented JSON."""
    p = Path(path)
    p.write_text(project.model_dump_json(indent=2))
    logger.info("Saved project %r to %s", project.name, p.name)


def load_project(path: str | Path) -> ProjectConfig:
    """Read a project file written by :func:`save_project`.

    Raises ``pydantic.ValidationError`` on malformed content.
    """
    p = Path(path)
    project = ProjectConfig.model_validate_json(p.read_text())
    logger.info(
        "Loaded project %r: %d projector(s)", project.name, len(project.projectors),
    )
    return project
