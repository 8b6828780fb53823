"""Camera-to-projector homography from decoded correspondences.

Fits a 3x3 projective transform with RANSAC (``cv2.findHomography``) so that
``(x', y', w') = H @ (x, y, 1)`` maps a camera pixel to the projector pixel
``(x'/w', y'/w')``.  A failed fit is always an exception, never a silently
returned identity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np

from .config import HomographySettings
from .decoder import DecodedCorrespondences
from .errors import (
    DegenerateGeometryError,
    InsufficientDataError,
    UndefinedProjectionError,
)

logger = logging.getLogger(__name__)

_EPS = 1e-10


def _identity() -> np.ndarray:
    return np.eye(3, dtype=np.float64)


@dataclass(frozen=True)
class HomographyResult:
    """Fitted homography and its quality metrics."""

    matrix: np.ndarray = field(default_factory=_identity)
    inlier_count: int = 0
    inlier_ratio: float = 0.0
    reprojection_error: float = 0.0

    @classmethod
    def identity(cls) -> HomographyResult:
        return cls()

    @property
    def is_identity(self) -> bool:
        return bool(np.allclose(self.matrix, np.eye(3)))

    def as_list(self) -> list[list[float]]:
        return [[float(v) for v in row] for row in self.matrix]


# -- Matrix helpers ------------------------------------------------------------


def transform_point(matrix: np.ndarray, x: float, y: float) -> tuple[float, float]:
    """Apply a homography to a single point (camera -> projector)."""
    h = np.asarray(matrix, dtype=np.float64)
    w = h[2, 0] * x + h[2, 1] * y + h[2, 2]
    if abs(w) < _EPS:
        raise UndefinedProjectionError(x, y, float(w))
    tx = (h[0, 0] * x + h[0, 1] * y + h[0, 2]) / w
    ty = (h[1, 0] * x + h[1, 1] * y + h[1, 2]) / w
    return float(tx), float(ty)


def transform_points(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Vectorized :func:`transform_point` for an (N, 2) array."""
    h = np.asarray(matrix, dtype=np.float64)
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    homog = np.column_stack([pts, np.ones(len(pts))]) @ h.T
    w = homog[:, 2]
    bad = np.abs(w) < _EPS
    if np.any(bad):
        i = int(np.argmax(bad))
        raise UndefinedProjectionError(float(pts[i, 0]), float(pts[i, 1]), float(w[i]))
    return homog[:, :2] / w[:, None]


def reprojection_errors(
    matrix: np.ndarray, src: np.ndarray, dst: np.ndarray,
) -> np.ndarray:
    """Euclidean distance between ``H(src)`` and ``dst`` for every pair."""
    projected = transform_points(matrix, src)
    return np.linalg.norm(projected - np.asarray(dst, dtype=np.float64), axis=1)


def invert(matrix: np.ndarray) -> np.ndarray:
    """Closed-form adjugate / determinant inverse of a 3x3 matrix."""
    h = np.asarray(matrix, dtype=np.float64)

    det = (
        h[0, 0] * (h[1, 1] * h[2, 2] - h[1, 2] * h[2, 1])
        - h[0, 1] * (h[1, 0] * h[2, 2] - h[1, 2] * h[2, 0])
        + h[0, 2] * (h[1, 0] * h[2, 1] - h[1, 1] * h[2, 0])
    )
    if abs(det) < _EPS:
        raise DegenerateGeometryError("matrix is singular, cannot invert", float(det))

    inv_det = 1.0 / det
    return np.array([
        [
            (h[1, 1] * h[2, 2] - h[1, 2] * h[2, 1]) * inv_det,
            (h[0, 2] * h[2, 1] - h[0, 1] * h[2, 2]) * inv_det,
            (h[0, 1] * h[1, 2] - h[0, 2] * h[1, 1]) * inv_det,
        ],
        [
            (h[1, 2] * h[2, 0] - h[1, 0] * h[2, 2]) * inv_det,
            (h[0, 0] * h[2, 2] - h[0, 2] * h[2, 0]) * inv_det,
            (h[0, 2] * h[1, 0] - h[0, 0] * h[1, 2]) * inv_det,
        ],
        [
            (h[1, 0] * h[2, 1] - h[1, 1] * h[2, 0]) * inv_det,
            (h[0, 1] * h[2, 0] - h[0, 0] * h[2, 1]) * inv_det,
            (h[0, 0] * h[1, 1] - h[0, 1] * h[1, 0]) * inv_det,
        ],
    ], dtype=np.float64)


# -- Estimator -----------------------------------------------------------------


class HomographyEstimator:
    """RANSAC homography fitting over a strided subset of correspondences."""

    def __init__(self, settings: HomographySettings | None = None):
        self.settings = settings or HomographySettings()

    def extract_points(
        self, corr: DecodedCorrespondences,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return (camera, projector) point pairs as (N, 2) float32 arrays."""
        s = self.settings
        stride = s.sample_stride
        w, h = corr.camera_width, corr.camera_height

        keep = corr.usable_mask() & (corr.confidence > s.min_confidence)
        keep = keep.reshape(h, w)[::stride, ::stride]

        cam_ys, cam_xs = np.nonzero(keep)
        cam_ys = cam_ys * stride
        cam_xs = cam_xs * stride
        idx = cam_ys * w + cam_xs

        src = np.column_stack([cam_xs, cam_ys]).astype(np.float32)
        dst = np.column_stack(
            [corr.projector_x[idx], corr.projector_y[idx]],
        ).astype(np.float32)
        return src, dst

    def compute(self, corr: DecodedCorrespondences) -> HomographyResult:
        s = self.settings
        src, dst = self.extract_points(corr)
        total = len(src)

        if total < s.min_points:
            raise InsufficientDataError(total, s.min_points)

        logger.info("Computing homography from %d point pairs", total)

        H, mask = cv2.findHomography(
            src, dst, cv2.RANSAC, s.ransac_threshold,
            maxIters=s.max_iters, confidence=s.confidence,
        )
        if H is None or H.size == 0 or H.shape != (3, 3):
            raise DegenerateGeometryError("solver returned no homography")
        if not np.all(np.isfinite(H)):
            raise DegenerateGeometryError("homography has non-finite entries")

        det = float(np.linalg.det(H))
        if abs(det) < _EPS:
            raise DegenerateGeometryError("fitted homography is singular", det)

        inliers = mask.ravel().astype(bool) if mask is not None else np.ones(total, bool)
        inlier_count = int(np.count_nonzero(inliers))
        inlier_ratio = inlier_count / total

        if inlier_count:
            errors = reprojection_errors(H, src[inliers], dst[inliers])
            reprojection_error = float(errors.mean())
        else:
            reprojection_error = 0.0

        logger.info(
            "Homography computed: %d inliers (%.1f%%), error: %.2fpx",
            inlier_count, inlier_ratio * 100.0, reprojection_error,
        )

        return HomographyResult(
            matrix=H.astype(np.float64),
            inlier_count=inlier_count,
            inlier_ratio=float(inlier_ratio),
            reprojection_error=reprojection_error,
        )
