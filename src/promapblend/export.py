"""Export of blend masks, correspondence maps and project files.

Blend masks are written as grayscale PNGs (8 or 16 bit) for media servers.
Correspondences use ``.npz`` for the arrays plus a small JSON sidecar for
metadata.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import cv2
import numpy as np

from .blending import BlendMask, OverlapEdge
from .config import BlendConfig, BlendCurve, ProjectConfig, ProjectorConfig
from .decoder import DecodedCorrespondences
from .overlap import OverlapDetectionResult

if TYPE_CHECKING:
    from .session import ProjectorCalibration

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 2


# -- Blend masks -----------------------------------------------------------------


def export_blend_mask(
    mask: BlendMask, path: str | Path, use_16bit: bool = False,
) -> Path:
    p = Path(path)
    image = mask.to_uint16() if use_16bit else mask.to_uint8()
    if not cv2.imwrite(str(p), image):
        raise OSError(f"Failed to write blend mask to {p}")
    logger.info(
        "Exported %dx%d blend mask (%d-bit) to %s",
        mask.width, mask.height, 16 if use_16bit else 8, p.name,
    )
    return p


def export_all_blend_masks(
    masks: Sequence[BlendMask], output_dir: str | Path, use_16bit: bool = False,
) -> list[Path]:
    """Write ``blend_mask_projector_{i}.png`` for every mask."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    return [
        export_blend_mask(m, out / f"blend_mask_projector_{i}.png", use_16bit)
        for i, m in enumerate(masks)
    ]


# -- Correspondences -------------------------------------------------------------


def save_correspondences(corr: DecodedCorrespondences, path: str | Path) -> None:
    """Save a correspondence map as JSON metadata + NPZ arrays."""
    p = Path(path)
    npz_path = p.with_suffix(".npz")
    np.savez_compressed(
        npz_path,
        projector_x=corr.projector_x,
        projector_y=corr.projector_y,
        valid_mask=corr.valid_mask.astype(np.uint8),
        confidence=corr.confidence,
    )

    meta = {
        "version": _FORMAT_VERSION,
        "camera_width": corr.camera_width,
        "camera_height": corr.camera_height,
        "projector_width": corr.projector_width,
        "projector_height": corr.projector_height,
        "valid_points": corr.valid_count(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "npz_file": npz_path.name,
    }
    p.write_text(json.dumps(meta))
    logger.info("Saved correspondences: %s + %s", p.name, npz_path.name)


def load_correspondences(path: str | Path) -> DecodedCorrespondences:
    p = Path(path)
    meta = json.loads(p.read_text())
    version = meta.get("version", 1)
    if version < _FORMAT_VERSION:
        raise ValueError(f"Unsupported correspondence file version {version}")

    with np.load(p.parent / meta["npz_file"]) as npz:
        corr = DecodedCorrespondences(
            camera_width=int(meta["camera_width"]),
            camera_height=int(meta["camera_height"]),
            projector_width=int(meta["projector_width"]),
            projector_height=int(meta["projector_height"]),
            projector_x=npz["projector_x"],
            projector_y=npz["projector_y"],
            valid_mask=npz["valid_mask"].astype(bool),
            confidence=npz["confidence"],
        )
    logger.info(
        "Loaded correspondences: %dx%d camera, %d valid (saved %s)",
        corr.camera_width, corr.camera_height, corr.valid_count(),
        meta.get("timestamp", "unknown"),
    )
    return corr


# -- Project file ----------------------------------------------------------------


_BLEND_FIELD = {
    OverlapEdge.LEFT: "left_width",
    OverlapEdge.RIGHT: "right_width",
    OverlapEdge.TOP: "top_width",
    OverlapEdge.BOTTOM: "bottom_width",
}


def project_from_results(
    projectors: Sequence[ProjectorCalibration],
    overlaps: OverlapDetectionResult | None = None,
    name: str = "New Project",
    canvas_width: int = 1920,
    canvas_height: int = 1080,
    curve: BlendCurve = BlendCurve.SMOOTHSTEP,
    camera_source: str | None = None,
) -> ProjectConfig:
    """Build a project file from calibrated projectors.

    Parameters
    ----------
    projectors : sequence of ProjectorCalibration
        Calibrated projectors; one without a homography is written with
        ``homography=None``.
    overlaps : OverlapDetectionResult, optional
        Detected overlaps.  Each one sets the blend width on the matching
        edge of both projectors; the widest overlap wins per edge.

    Returns
    -------
    ProjectConfig
    """
    widths: dict[int, dict[str, int]] = {p.projector_id: {} for p in projectors}
    for o in (overlaps.overlaps if overlaps is not None else []):
        for pid, edge in ((o.projector_a, o.edge), (o.projector_b, o.edge.opposite)):
            if pid not in widths:
                continue
            key = _BLEND_FIELD[edge]
            widths[pid][key] = max(widths[pid].get(key, 0), o.overlap_width)

    configs = []
    for p in projectors:
        homography = p.homography
        configs.append(ProjectorConfig(
            id=p.projector_id,
            name=f"Projector {p.projector_id}",
            width=p.projector_width,
            height=p.projector_height,
            homography=(
                [float(v) for v in np.asarray(homography.matrix).ravel()]
                if homography is not None else None
            ),
            blend=BlendConfig(curve=curve, **widths[p.projector_id]),
        ))

    project = ProjectConfig(
        name=name,
        canvas_width=canvas_width,
        canvas_height=canvas_height,
        projectors=configs,
        camera_source=camera_source,
    )
    logger.info(
        "Built project %r with %d projector(s)", project.name, len(configs),
    )
    return project
