"""Gray code decoding into per-camera-pixel projector correspondences.

The decode pipeline:
1. Lit mask from the white-black reference difference
2. Per-bit comparison (normal > inverted) for every bit plane of each axis
3. Noise margin on the top MSB bits gates validity (LSBs are too noisy at
   stripe boundaries to be used as a gate)
4. Vectorized Gray-to-binary decode
5. Explicit boundary validation (decoded values in projector range)
6. Confidence from the mean per-bit margin relative to the local contrast
7. Optional spatial consistency filter

The result is a set of flat arrays indexed ``y * camera_width + x``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import cv2
import numpy as np
import torch

from .config import DecoderSettings
from .errors import CalibrationError, MissingExposureError
from .graycode import PatternDirection, PatternSpec, gray_decode_array, num_bits

logger = logging.getLogger(__name__)


# -- Frame helpers -------------------------------------------------------------


def _to_numpy(frame: np.ndarray | torch.Tensor) -> np.ndarray:
    if isinstance(frame, torch.Tensor):
        return frame.detach().cpu().numpy()
    return np.asarray(frame)


def detect_float_scale(frame: np.ndarray | torch.Tensor) -> float | None:
    """Divisor that brings a float frame to [0, 1].

    Float frames whose maximum is at most 1.5 are taken as already
    normalised, anything brighter as 0..255.  Returns None for integer
    frames, whose scale follows from the dtype.
    """
    img = _to_numpy(frame)
    if not np.issubdtype(img.dtype, np.floating):
        return None
    return 1.0 if img.size == 0 or float(img.max()) <= 1.5 else 255.0


def to_gray_float(
    frame: np.ndarray | torch.Tensor, float_scale: float | None = None,
) -> np.ndarray:
    """Convert a camera frame to a (H, W) float32 grayscale image in [0, 1].

    Accepts numpy arrays or torch tensors shaped (H, W), (H, W, C) or
    (1, H, W, C).  Colour frames are assumed RGB.  uint8 and uint16 frames
    are scaled by their dtype range.  Float frames are divided by
    *float_scale*; pass the value :func:`detect_float_scale` gave for the
    white reference so every capture of one projector shares a scale.
    Without it the scale is guessed from the frame itself.
    """
    img = _to_numpy(frame)

    if img.ndim == 4:
        img = img[0]
    if img.ndim == 3 and img.shape[2] == 1:
        img = img[:, :, 0]

    if img.dtype == np.uint8:
        scale = 255.0
    elif img.dtype == np.uint16:
        scale = 65535.0
    else:
        img = img.astype(np.float32)
        scale = float_scale if float_scale is not None else detect_float_scale(img)

    if img.ndim == 3:
        if img.shape[2] == 4:
            img = cv2.cvtColor(img, cv2.COLOR_RGBA2GRAY)
        else:
            img = cv2.cvtColor(img, cv2.COLOR_RGB2GRAY)

    return (img.astype(np.float32) / scale).astype(np.float32)


def average_frames(
    frames: Sequence[np.ndarray],
    target_shape: tuple[int, int] | None = None,
) -> np.ndarray:
    """Return the mean of several (H, W) captures as float32.

    If *target_shape* ``(h, w)`` is given, frames that don't match are
    resized first (guards against resolution changes mid-capture).
    """
    if not frames:
        raise ValueError("No frames to average")

    if target_shape is not None:
        th, tw = target_shape
        frames = [
            cv2.resize(f, (tw, th), interpolation=cv2.INTER_LINEAR)
            if f.shape[:2] != (th, tw) else f
            for f in frames
        ]

    if len(frames) == 1:
        return np.asarray(frames[0], dtype=np.float32)
    return np.mean(frames, axis=0).astype(np.float32)


# -- Data model ----------------------------------------------------------------


@dataclass(slots=True)
class CapturedExposure:
    """A camera capture taken while ``spec`` was displayed."""

    image: np.ndarray | torch.Tensor
    spec: PatternSpec


@dataclass
class DecodedCorrespondences:
    """Per-camera-pixel projector coordinates for one projector.

    ``projector_x`` / ``projector_y`` hold -1 where a pixel is unmapped.
    A negative coordinate is treated as invalid regardless of ``valid_mask``.
    """

    camera_width: int
    camera_height: int
    projector_width: int
    projector_height: int
    projector_x: np.ndarray
    projector_y: np.ndarray
    valid_mask: np.ndarray
    confidence: np.ndarray
    stats: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        size = self.camera_width * self.camera_height
        self.projector_x = np.asarray(self.projector_x, dtype=np.int32).ravel()
        self.projector_y = np.asarray(self.projector_y, dtype=np.int32).ravel()
        self.valid_mask = np.asarray(self.valid_mask, dtype=bool).ravel()
        self.confidence = np.asarray(self.confidence, dtype=np.float32).ravel()
        for name in ("projector_x", "projector_y", "valid_mask", "confidence"):
            n = getattr(self, name).size
            if n != size:
                raise ValueError(
                    f"{name} has {n} entries, expected "
                    f"{self.camera_width}x{self.camera_height}={size}"
                )

    @classmethod
    def empty(
        cls,
        camera_width: int,
        camera_height: int,
        projector_width: int,
        projector_height: int,
    ) -> DecodedCorrespondences:
        size = camera_width * camera_height
        return cls(
            camera_width=camera_width,
            camera_height=camera_height,
            projector_width=projector_width,
            projector_height=projector_height,
            projector_x=np.full(size, -1, dtype=np.int32),
            projector_y=np.full(size, -1, dtype=np.int32),
            valid_mask=np.zeros(size, dtype=bool),
            confidence=np.zeros(size, dtype=np.float32),
        )

    def index(self, x: int, y: int) -> int:
        return y * self.camera_width + x

    def get(self, x: int, y: int) -> tuple[int, int] | None:
        """Projector pixel seen by camera pixel (x, y), or None if unmapped."""
        i = self.index(x, y)
        px = int(self.projector_x[i])
        py = int(self.projector_y[i])
        if self.valid_mask[i] and px >= 0 and py >= 0:
            return px, py
        return None

    def usable_mask(self) -> np.ndarray:
        return self.valid_mask & (self.projector_x >= 0) & (self.projector_y >= 0)

    def valid_count(self) -> int:
        return int(np.count_nonzero(self.usable_mask()))

    @property
    def is_empty(self) -> bool:
        return self.valid_count() == 0

    @property
    def coverage(self) -> float:
        """Fraction of camera pixels with a usable correspondence."""
        return self.valid_count() / max(self.projector_x.size, 1)


# -- Decoder -------------------------------------------------------------------


class CorrespondenceDecoder:
    """Decodes normal/inverted Gray code exposure pairs.

    Stateless apart from its settings; one ``decode()`` call per projector.
    """

    def __init__(self, settings: DecoderSettings | None = None):
        self.settings = settings or DecoderSettings()

    def decode(
        self,
        white: np.ndarray | torch.Tensor,
        black: np.ndarray | torch.Tensor,
        exposures: Sequence[CapturedExposure],
        projector_width: int,
        projector_height: int,
    ) -> DecodedCorrespondences:
        # Float captures share the white reference's scale.
        float_scale = detect_float_scale(white)
        white_f = to_gray_float(white, float_scale)
        ref_shape = white_f.shape[:2]
        black_f = self._resized(
            to_gray_float(black, float_scale), ref_shape, "black reference",
        )
        h, w = ref_shape
        s = self.settings

        contrast = white_f - black_f
        lit = contrast > s.contrast_threshold
        n_lit = int(np.count_nonzero(lit))

        logger.info(
            "Decode: camera %dx%d, projector %dx%d, contrast_threshold=%.3f, "
            "bit_threshold=%.3f",
            w, h, projector_width, projector_height,
            s.contrast_threshold, s.bit_threshold,
        )
        logger.info(
            "  Lit mask: %d/%d pixels (%.1f%%) [white-black range: %.3f..%.3f]",
            n_lit, h * w, 100.0 * n_lit / max(h * w, 1),
            float(contrast.min()), float(contrast.max()),
        )

        if n_lit == 0:
            logger.error(
                "  ZERO lit pixels -- the camera does not see this projector. "
                "white mean=%.3f, black mean=%.3f",
                float(white_f.mean()), float(black_f.mean()),
            )
            result = DecodedCorrespondences.empty(
                w, h, projector_width, projector_height,
            )
            result.stats = {"lit": 0, "valid": 0}
            return result

        lookup = {
            (e.spec.direction, e.spec.bit_index, e.spec.inverted): e
            for e in exposures
        }

        col, reliable_x, margin_x = self._decode_axis(
            lookup, PatternDirection.HORIZONTAL,
            projector_width, ref_shape, float_scale,
        )
        row, reliable_y, margin_y = self._decode_axis(
            lookup, PatternDirection.VERTICAL,
            projector_height, ref_shape, float_scale,
        )

        in_bounds = (
            (col >= 0) & (col < projector_width)
            & (row >= 0) & (row < projector_height)
        )
        valid = lit & reliable_x & reliable_y & in_bounds

        if s.spatial_consistency:
            valid &= self._consistent(col, row, valid)

        safe_contrast = np.where(lit, contrast, 1.0)
        confidence = np.clip(0.5 * (margin_x + margin_y) / safe_contrast, 0.0, 1.0)
        confidence = np.where(valid, confidence, 0.0).astype(np.float32)

        n_valid = int(np.count_nonzero(valid))
        logger.info(
            "  lit: %d, reliable_x: %d, reliable_y: %d, in-bounds: %d, "
            "final valid: %d/%d (%.1f%%)",
            n_lit,
            int(np.count_nonzero(reliable_x)),
            int(np.count_nonzero(reliable_y)),
            int(np.count_nonzero(in_bounds)),
            n_valid, h * w, 100.0 * n_valid / max(h * w, 1),
        )

        proj_x = np.where(valid, col, -1).astype(np.int32)
        proj_y = np.where(valid, row, -1).astype(np.int32)

        result = DecodedCorrespondences(
            camera_width=w,
            camera_height=h,
            projector_width=projector_width,
            projector_height=projector_height,
            projector_x=proj_x.ravel(),
            projector_y=proj_y.ravel(),
            valid_mask=valid.ravel(),
            confidence=confidence.ravel(),
        )
        result.stats = {
            "lit": n_lit,
            "valid": n_valid,
            "mean_confidence": float(confidence[valid].mean()) if n_valid else 0.0,
        }
        return result

    # -- Internal helpers -----------------------------------------------------

    def _decode_axis(
        self,
        lookup: dict[tuple[PatternDirection, int, bool], CapturedExposure],
        direction: PatternDirection,
        dimension: int,
        ref_shape: tuple[int, int],
        float_scale: float | None = None,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Decode one axis.

        The code width comes from the exposures' own ``total_bits`` so the
        decode matches what the renderer displayed.

        Returns (binary index, reliability mask, mean per-bit margin).
        """
        bits = self._axis_bits(lookup, direction, dimension)
        h, w = ref_shape
        s = self.settings
        gray = np.zeros((h, w), dtype=np.int32)
        reliable = np.ones((h, w), dtype=bool)
        margin = np.zeros((h, w), dtype=np.float32)
        gate_bits = min(s.msb_gate_bits, bits)

        for bit_index in range(bits):
            normal = lookup.get((direction, bit_index, False))
            inverted = lookup.get((direction, bit_index, True))
            if normal is None:
                raise MissingExposureError(direction.value, bit_index, False)
            if inverted is None:
                raise MissingExposureError(direction.value, bit_index, True)

            label = f"{direction.value} bit {bit_index}"
            pos_f = self._resized(
                to_gray_float(normal.image, float_scale), ref_shape, label,
            )
            neg_f = self._resized(
                to_gray_float(inverted.image, float_scale), ref_shape, label,
            )
            diff = pos_f - neg_f
            abs_diff = np.abs(diff)

            gray |= (diff > 0).astype(np.int32) << normal.spec.bit_position
            margin += abs_diff

            if bit_index < gate_bits:
                reliable &= abs_diff > s.bit_threshold

            if bit_index < 2 or bit_index == bits - 1:
                logger.debug(
                    "  %s: diff mean=%.3f, reliable(>%.3f)=%.1f%%, gate=%s",
                    label, float(abs_diff.mean()), s.bit_threshold,
                    100.0 * np.count_nonzero(abs_diff > s.bit_threshold)
                    / max(h * w, 1),
                    "yes" if bit_index < gate_bits else "no",
                )

        return gray_decode_array(gray), reliable, margin / bits

    @staticmethod
    def _axis_bits(
        lookup: dict[tuple[PatternDirection, int, bool], CapturedExposure],
        direction: PatternDirection,
        dimension: int,
    ) -> int:
        """Code width of one axis, read from the exposures' metadata."""
        widths = {
            e.spec.total_bits for key, e in lookup.items() if key[0] == direction
        }
        if not widths:
            # Nothing captured for this axis; the bit loop reports bit 0 missing.
            return num_bits(dimension)
        if len(widths) > 1:
            raise CalibrationError(
                f"Inconsistent {direction.value} exposures: total_bits "
                f"{sorted(widths)}",
                details={"direction": direction.value, "total_bits": sorted(widths)},
            )
        bits = widths.pop()
        if 2 ** bits < dimension:
            raise CalibrationError(
                f"{bits} {direction.value} bits cannot address {dimension} "
                f"projector pixels",
                details={
                    "direction": direction.value,
                    "total_bits": bits,
                    "dimension": dimension,
                },
            )
        if bits != num_bits(dimension):
            logger.warning(
                "  %s exposures use %d bits, %d would suffice for %d pixels",
                direction.value, bits, num_bits(dimension), dimension,
            )
        return bits

    def _consistent(
        self, col: np.ndarray, row: np.ndarray, valid: np.ndarray,
    ) -> np.ndarray:
        """Reject pixels whose decode differs from the valid-only local mean."""
        s = self.settings
        k = s.consistency_kernel | 1
        mask_f = valid.astype(np.float32)
        local_sum_x = cv2.blur(col.astype(np.float32) * mask_f, (k, k))
        local_sum_y = cv2.blur(row.astype(np.float32) * mask_f, (k, k))
        local_count = cv2.blur(mask_f, (k, k))

        has_neighbors = local_count > 0.01
        safe_count = np.where(has_neighbors, local_count, 1.0)
        mean_x = np.where(has_neighbors, local_sum_x / safe_count, col)
        mean_y = np.where(has_neighbors, local_sum_y / safe_count, row)

        consistent = (
            (np.abs(col - mean_x) <= s.consistency_max_diff)
            & (np.abs(row - mean_y) <= s.consistency_max_diff)
        )
        logger.info(
            "  Spatial consistency rejected %d pixels",
            int(np.count_nonzero(valid & ~consistent)),
        )
        return consistent

    @staticmethod
    def _resized(
        img: np.ndarray, ref_shape: tuple[int, int], label: str,
    ) -> np.ndarray:
        if img.shape[:2] == ref_shape:
            return img
        logger.warning(
            "  %s is %dx%d, resizing to reference %dx%d",
            label, img.shape[1], img.shape[0], ref_shape[1], ref_shape[0],
        )
        return cv2.resize(
            img, (ref_shape[1], ref_shape[0]), interpolation=cv2.INTER_LINEAR,
        )
