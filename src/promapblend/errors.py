"""Exceptions raised by the calibration engine.

A missing overlap between two projectors is not an error: the detector simply
returns no region for that pair.
"""

from __future__ import annotations

from typing import Any


class CalibrationError(Exception):
    """Base exception for all calibration errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InsufficientDataError(CalibrationError):
    """Too few valid, confident correspondences to fit a homography."""

    def __init__(self, count: int, required: int):
        message = (
            f"Not enough valid correspondences: {count} "
            f"(need at least {required})"
        )
        super().__init__(message, details={"count": count, "required": required})
        self.count = count
        self.required = required


class DegenerateGeometryError(CalibrationError):
    """Singular homography fit or a near-singular matrix inversion."""

    def __init__(self, reason: str, determinant: float | None = None):
        super().__init__(
            f"Degenerate geometry: {reason}",
            details={"reason": reason, "determinant": determinant},
        )
        self.reason = reason
        self.determinant = determinant


class UndefinedProjectionError(CalibrationError):
    """A point maps to the plane at infinity (``|w| < 1e-10``)."""

    def __init__(self, x: float, y: float, w: float):
        super().__init__(
            f"Point ({x:.3f}, {y:.3f}) projects to infinity (w={w:.3e})",
            details={"x": x, "y": y, "w": w},
        )
        self.x = x
        self.y = y
        self.w = w


class MissingExposureError(CalibrationError):
    """The decoder was handed an incomplete set of exposures."""

    def __init__(self, direction: str, bit_index: int, inverted: bool):
        kind = "inverted" if inverted else "normal"
        super().__init__(
            f"Missing {kind} {direction} exposure for bit {bit_index}",
            details={
                "direction": direction,
                "bit_index": bit_index,
                "inverted": inverted,
            },
        )
