"""Multi-projector calibration workflow.

Usage
-----
1. ``add_projector()`` for every projector, then ``start()``.
2. Show ``current_pattern_image()`` (or render from
   ``get_current_pattern_params()``) on the active projector.
3. Feed camera frames with ``submit_frame()``; frames arriving before the
   settle time has elapsed are ignored.
4. When ``phase`` reaches DECODING, call ``process()`` until the session
   moves on to the next projector or DONE.
5. Inspect ``reports`` and run ``detect_overlaps()``.

A projector that fails to decode or fit does not abort the session; its
report carries the error and the remaining projectors are still calibrated.
"""

from __future__ import annotations

import logging
import time as _time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Sequence

import numpy as np
import torch

from .config import (
    DecoderSettings,
    HomographySettings,
    OverlapConfig,
    SessionSettings,
)
from .decoder import (
    CapturedExposure,
    CorrespondenceDecoder,
    DecodedCorrespondences,
    average_frames,
    detect_float_scale,
    to_gray_float,
)
from .errors import CalibrationError, InsufficientDataError
from .graycode import (
    PatternConfig,
    PatternSpec,
    generate_black,
    generate_pattern,
    generate_white,
)
from .homography import HomographyEstimator, HomographyResult
from .overlap import OverlapDetectionResult, OverlapDetector

logger = logging.getLogger(__name__)


class CalibrationPhase(Enum):
    IDLE = auto()
    WHITE = auto()
    BLACK = auto()
    PATTERNS = auto()
    DECODING = auto()
    COMPUTING_HOMOGRAPHY = auto()
    DONE = auto()


_CAPTURE_PHASES = (
    CalibrationPhase.WHITE, CalibrationPhase.BLACK, CalibrationPhase.PATTERNS,
)


@dataclass
class ProjectorCalibration:
    """Captures and results for one projector."""

    projector_id: int
    projector_width: int
    projector_height: int
    white_reference: np.ndarray | None = None
    black_reference: np.ndarray | None = None
    exposures: list[CapturedExposure] = field(default_factory=list)
    correspondences: DecodedCorrespondences | None = None
    homography: HomographyResult | None = None

    @property
    def pattern_config(self) -> PatternConfig:
        return PatternConfig(self.projector_width, self.projector_height)

    def pattern_sequence(self) -> list[PatternSpec]:
        return self.pattern_config.pattern_sequence()

    def clear(self) -> None:
        self.white_reference = None
        self.black_reference = None
        self.exposures = []
        self.correspondences = None
        self.homography = None


@dataclass
class ProjectorReport:
    """Outcome of calibrating one projector."""

    projector_id: int
    valid_points: int = 0
    homography: HomographyResult | None = None
    error: CalibrationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.homography is not None

    def summary(self) -> str:
        if self.ok:
            h = self.homography
            return (
                f"Projector {self.projector_id}: OK -- {self.valid_points} points, "
                f"{h.inlier_count} inliers ({h.inlier_ratio * 100.0:.1f}%), "
                f"reprojection error {h.reprojection_error:.2f}px"
            )
        reason = self.error.message if self.error else "not calibrated"
        if isinstance(self.error, InsufficientDataError):
            reason += " -- check that the camera sees this projector"
        return (
            f"Projector {self.projector_id}: FAILED -- {reason} "
            f"({self.valid_points} decoded points)"
        )


# -- Stateless per-projector pipeline ------------------------------------------


def decode_projector(
    projector: ProjectorCalibration, decoder: CorrespondenceDecoder,
) -> DecodedCorrespondences:
    if projector.white_reference is None or projector.black_reference is None:
        raise CalibrationError(
            f"Missing white/black reference for projector {projector.projector_id}",
            details={"projector_id": projector.projector_id},
        )
    logger.info("Decoding patterns for projector %d", projector.projector_id)
    corr = decoder.decode(
        projector.white_reference,
        projector.black_reference,
        projector.exposures,
        projector.projector_width,
        projector.projector_height,
    )
    projector.correspondences = corr
    return corr


def fit_projector(
    projector: ProjectorCalibration, estimator: HomographyEstimator,
) -> HomographyResult:
    if projector.correspondences is None:
        raise CalibrationError(
            f"Projector {projector.projector_id} has not been decoded",
            details={"projector_id": projector.projector_id},
        )
    logger.info("Computing homography for projector %d", projector.projector_id)
    result = estimator.compute(projector.correspondences)
    projector.homography = result
    return result


def calibrate_projector(
    projector: ProjectorCalibration,
    decoder: CorrespondenceDecoder | None = None,
    estimator: HomographyEstimator | None = None,
) -> ProjectorReport:
    """Decode and fit one projector, capturing any failure in the report."""
    decoder = decoder or CorrespondenceDecoder()
    estimator = estimator or HomographyEstimator()
    report = ProjectorReport(projector.projector_id)
    try:
        corr = decode_projector(projector, decoder)
        report.valid_points = corr.valid_count()
        report.homography = fit_projector(projector, estimator)
    except CalibrationError as exc:
        report.error = exc
        logger.error("%s", report.summary())
    else:
        logger.info("%s", report.summary())
    return report


def calibrate_all(
    projectors: Sequence[ProjectorCalibration],
    decoder: CorrespondenceDecoder | None = None,
    estimator: HomographyEstimator | None = None,
) -> list[ProjectorReport]:
    """Calibrate every projector independently, one report each."""
    decoder = decoder or CorrespondenceDecoder()
    estimator = estimator or HomographyEstimator()
    reports = [calibrate_projector(p, decoder, estimator) for p in projectors]
    n_ok = sum(r.ok for r in reports)
    logger.info("Calibrated %d/%d projector(s)", n_ok, len(reports))
    return reports


# -- Interactive session ---------------------------------------------------------


class CalibrationSession:
    """Drives white, black and Gray code captures for each projector in turn."""

    def __init__(
        self,
        settings: SessionSettings | None = None,
        decoder_settings: DecoderSettings | None = None,
        homography_settings: HomographySettings | None = None,
    ):
        self.settings = settings or SessionSettings()
        self.decoder = CorrespondenceDecoder(decoder_settings)
        self.estimator = HomographyEstimator(homography_settings)

        self.projectors: list[ProjectorCalibration] = []
        self.reports: dict[int, ProjectorReport] = {}
        self.phase = CalibrationPhase.IDLE

        self._current = 0
        self._pattern_index = 0
        self._sequence: list[PatternSpec] = []
        self._accumulated: list[np.ndarray] = []
        self._accepting = False
        self._phase_start = 0.0
        self._float_scale: float | None = None

    # -- Setup ----------------------------------------------------------------

    def add_projector(self, projector_id: int, width: int, height: int) -> None:
        if any(p.projector_id == projector_id for p in self.projectors):
            raise ValueError(f"Projector {projector_id} already added")
        self.projectors.append(ProjectorCalibration(projector_id, width, height))

    def start(self) -> None:
        """Begin the capture sequence with the first projector."""
        if not self.projectors:
            raise CalibrationError("No projectors configured")
        for p in self.projectors:
            p.clear()
        self.reports = {}
        self._current = 0
        self._begin_projector()
        logger.info("Starting calibration for %d projector(s)", len(self.projectors))

    def cancel(self) -> None:
        self.phase = CalibrationPhase.IDLE
        self._accumulated = []
        self._accepting = False
        logger.info("Calibration cancelled")

    # -- Status ---------------------------------------------------------------

    @property
    def current_projector(self) -> ProjectorCalibration | None:
        if self.phase in (CalibrationPhase.IDLE, CalibrationPhase.DONE):
            return None
        return self.projectors[self._current]

    @property
    def current_spec(self) -> PatternSpec | None:
        if self.phase is CalibrationPhase.PATTERNS:
            return self._sequence[self._pattern_index]
        return None

    @property
    def progress(self) -> float:
        """Calibration progress as a float in [0, 1]."""
        if self.phase is CalibrationPhase.DONE:
            return 1.0
        if self.phase is CalibrationPhase.IDLE or not self.projectors:
            return 0.0

        # Every capture counts as one step, plus one for decoding and fitting.
        per_projector = [
            p.pattern_config.total_patterns() + 1 for p in self.projectors
        ]
        total = sum(per_projector)
        done = sum(per_projector[: self._current])
        if self.phase is CalibrationPhase.WHITE:
            step = 0
        elif self.phase is CalibrationPhase.BLACK:
            step = 1
        elif self.phase is CalibrationPhase.PATTERNS:
            step = 2 + self._pattern_index
        else:
            step = per_projector[self._current] - 1
        return min((done + step) / max(total, 1), 1.0)

    def failed_projectors(self) -> list[ProjectorReport]:
        return [r for r in self.reports.values() if not r.ok]

    def get_current_pattern_params(self) -> dict | None:
        """Describe the current pattern for an external renderer.

        Returns ``None`` when no pattern should be displayed.
        """
        projector = self.current_projector
        if projector is None or self.phase not in _CAPTURE_PHASES:
            return None
        params = {
            "projector_id": projector.projector_id,
            "proj_w": projector.projector_width,
            "proj_h": projector.projector_height,
        }
        if self.phase is CalibrationPhase.WHITE:
            params.update(type="white", brightness=self.settings.brightness)
        elif self.phase is CalibrationPhase.BLACK:
            params.update(type="black")
        else:
            spec = self.current_spec
            params.update(
                type="graycode",
                direction=spec.direction.value,
                bit_index=spec.bit_index,
                total_bits=spec.total_bits,
                inverted=spec.inverted,
                brightness=self.settings.brightness,
            )
        return params

    def current_pattern_image(self) -> np.ndarray | None:
        """Render the current pattern as (proj_h, proj_w) uint8."""
        projector = self.current_projector
        if projector is None or self.phase not in _CAPTURE_PHASES:
            return None
        w, h = projector.projector_width, projector.projector_height
        if self.phase is CalibrationPhase.WHITE:
            return generate_white(w, h, self.settings.brightness)
        if self.phase is CalibrationPhase.BLACK:
            return generate_black(w, h)
        return generate_pattern(self.current_spec, w, h, self.settings.brightness)

    # -- Frame stepping -------------------------------------------------------

    def update(self, now: float | None = None) -> None:
        """Start accepting frames once the settle time has elapsed."""
        if self.phase not in _CAPTURE_PHASES or self._accepting:
            return
        now = _time.monotonic() if now is None else now
        if (now - self._phase_start) * 1000.0 >= self.settings.settle_time_ms:
            self._accepting = True

    def submit_frame(
        self, frame: np.ndarray | torch.Tensor, now: float | None = None,
    ) -> bool:
        """Feed one camera frame. Returns True if the frame was used."""
        self.update(now)
        if not self._accepting:
            return False

        if self.phase is CalibrationPhase.WHITE and not self._accumulated:
            # Float captures of this projector all use the white frame's scale.
            self._float_scale = detect_float_scale(frame)
        self._accumulated.append(to_gray_float(frame, self._float_scale))
        if len(self._accumulated) < self.settings.frames_to_average:
            return True

        averaged = average_frames(
            self._accumulated, target_shape=self._accumulated[0].shape[:2],
        )
        self._accumulated = []
        self._store(averaged)
        self._advance(now)
        return True

    def process(self) -> bool:
        """Run the decode or fit step for the current projector.

        Returns True once the projector is finished (successfully or not).
        """
        if self.phase is CalibrationPhase.DECODING:
            projector = self.projectors[self._current]
            report = ProjectorReport(projector.projector_id)
            self.reports[projector.projector_id] = report
            try:
                corr = decode_projector(projector, self.decoder)
            except CalibrationError as exc:
                report.error = exc
                logger.error("%s", report.summary())
                self._next_projector()
                return True
            report.valid_points = corr.valid_count()
            self.phase = CalibrationPhase.COMPUTING_HOMOGRAPHY
            return False

        if self.phase is CalibrationPhase.COMPUTING_HOMOGRAPHY:
            projector = self.projectors[self._current]
            report = self.reports[projector.projector_id]
            try:
                report.homography = fit_projector(projector, self.estimator)
            except CalibrationError as exc:
                report.error = exc
                logger.error("%s", report.summary())
            else:
                logger.info("%s", report.summary())
            self._next_projector()
            return True

        return True

    def detect_overlaps(
        self, config: OverlapConfig | None = None,
    ) -> OverlapDetectionResult:
        return OverlapDetector(config).detect(self.projectors)

    # -- Internal helpers -----------------------------------------------------

    def _store(self, averaged: np.ndarray) -> None:
        projector = self.projectors[self._current]
        if self.phase is CalibrationPhase.WHITE:
            projector.white_reference = averaged
            logger.info(
                "Captured WHITE reference for projector %d: min=%.3f max=%.3f mean=%.3f",
                projector.projector_id,
                averaged.min(), averaged.max(), averaged.mean(),
            )
        elif self.phase is CalibrationPhase.BLACK:
            projector.black_reference = averaged
            logger.info(
                "Captured BLACK reference for projector %d: mean=%.3f",
                projector.projector_id, averaged.mean(),
            )
        else:
            projector.exposures.append(CapturedExposure(averaged, self.current_spec))

    def _advance(self, now: float | None) -> None:
        """WHITE -> BLACK -> PATTERNS -> DECODING."""
        if self.phase is CalibrationPhase.WHITE:
            self.phase = CalibrationPhase.BLACK
        elif self.phase is CalibrationPhase.BLACK:
            self.phase = CalibrationPhase.PATTERNS
            self._pattern_index = 0
        else:
            self._pattern_index += 1
            if self._pattern_index >= len(self._sequence):
                self.phase = CalibrationPhase.DECODING
                self._accepting = False
                return
        self._begin_settle(now)

    def _begin_projector(self) -> None:
        projector = self.projectors[self._current]
        self._sequence = projector.pattern_sequence()
        self._pattern_index = 0
        self._accumulated = []
        self.phase = CalibrationPhase.WHITE
        self._float_scale = None
        self._begin_settle(None)
        logger.info(
            "Projector %d: %dx%d, %d patterns",
            projector.projector_id, projector.projector_width,
            projector.projector_height, projector.pattern_config.total_patterns(),
        )

    def _next_projector(self) -> None:
        self._current += 1
        if self._current < len(self.projectors):
            self._begin_projector()
        else:
            self.phase = CalibrationPhase.DONE
            n_ok = sum(r.ok for r in self.reports.values())
            logger.info(
                "Calibration complete: %d/%d projector(s) OK",
                n_ok, len(self.projectors),
            )

    def _begin_settle(self, now: float | None) -> None:
        self._accepting = False
        self._phase_start = _time.monotonic() if now is None else now
