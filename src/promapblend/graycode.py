"""Gray code pattern specification for structured light calibration.

Each projector axis is encoded with ``ceil(log2(dimension))`` bit planes,
projected MSB-first (coarsest stripes first).  Every bit plane is shown twice:
once normal and once inverted, so the decoder can compare the two captures
per pixel instead of relying on an absolute threshold.

Axis convention:
  HORIZONTAL -- code varies along the projector x axis, decodes the column
  VERTICAL   -- code varies along the projector y axis, decodes the row
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

import numpy as np
import torch


class PatternDirection(str, Enum):
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"


@dataclass(frozen=True, slots=True)
class PatternSpec:
    """One structured-light exposure.

    ``bit_index`` 0 is the most significant bit of the ``total_bits``-wide
    codeword.
    """

    bit_index: int
    total_bits: int
    direction: PatternDirection
    inverted: bool = False

    def __post_init__(self) -> None:
        if self.total_bits < 1:
            raise ValueError(f"total_bits must be >= 1, got {self.total_bits}")
        if not 0 <= self.bit_index < self.total_bits:
            raise ValueError(
                f"bit_index {self.bit_index} out of range for "
                f"{self.total_bits} bits"
            )

    @property
    def bit_position(self) -> int:
        """Position of the encoded bit in the binary codeword (0 = LSB)."""
        return self.total_bits - 1 - self.bit_index

    def complement(self) -> PatternSpec:
        return PatternSpec(
            self.bit_index, self.total_bits, self.direction, not self.inverted,
        )


# -- Gray code utilities ------------------------------------------------------


def gray_encode(n: int) -> int:
    return n ^ (n >> 1)


def gray_decode(g: int) -> int:
    n = g
    mask = n >> 1
    while mask:
        n ^= mask
        mask >>= 1
    return n


def gray_decode_array(codes: np.ndarray) -> np.ndarray:
    """Vectorized Gray-to-binary decode of an integer array."""
    binary = codes.astype(np.int32, copy=True)
    shift = binary >> 1
    while np.any(shift):
        binary ^= shift
        shift >>= 1
    return binary


def num_bits(resolution: int) -> int:
    return max(1, math.ceil(math.log2(max(resolution, 2))))


# -- Pattern sequence ---------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PatternConfig:
    projector_width: int
    projector_height: int

    @property
    def horizontal_bits(self) -> int:
        return num_bits(self.projector_width)

    @property
    def vertical_bits(self) -> int:
        return num_bits(self.projector_height)

    def bits_for(self, direction: PatternDirection) -> int:
        if direction is PatternDirection.HORIZONTAL:
            return self.horizontal_bits
        return self.vertical_bits

    def total_patterns(self) -> int:
        """Number of exposures including the white and black references."""
        return 2 * (self.horizontal_bits + self.vertical_bits) + 2

    def pattern_sequence(self) -> list[PatternSpec]:
        """Ordered Gray code exposures (references excluded)."""
        patterns: list[PatternSpec] = []
        for direction in (PatternDirection.HORIZONTAL, PatternDirection.VERTICAL):
            bits = self.bits_for(direction)
            for bit in range(bits):
                patterns.append(PatternSpec(bit, bits, direction, False))
                patterns.append(PatternSpec(bit, bits, direction, True))
        return patterns


# -- Pattern rendering --------------------------------------------------------


def generate_pattern(
    spec: PatternSpec,
    proj_w: int,
    proj_h: int,
    brightness: int = 255,
) -> np.ndarray:
    """Render a single Gray code pattern.

    Returns
    -------
    np.ndarray
        (proj_h, proj_w) uint8 image, stripes at ``brightness`` or 0.
    """
    if spec.direction is PatternDirection.HORIZONTAL:
        indices = np.arange(proj_w, dtype=np.int32)
    else:
        indices = np.arange(proj_h, dtype=np.int32)

    gray = indices ^ (indices >> 1)
    bit = (gray >> spec.bit_position) & 1
    if spec.inverted:
        bit = 1 - bit
    stripe = bit.astype(np.uint8) * np.uint8(brightness)

    if spec.direction is PatternDirection.HORIZONTAL:
        return np.tile(stripe[np.newaxis, :], (proj_h, 1))
    return np.tile(stripe[:, np.newaxis], (1, proj_w))


def generate_white(proj_w: int, proj_h: int, brightness: int = 255) -> np.ndarray:
    return np.full((proj_h, proj_w), brightness, dtype=np.uint8)


def generate_black(proj_w: int, proj_h: int) -> np.ndarray:
    return np.zeros((proj_h, proj_w), dtype=np.uint8)


def pattern_to_tensor(pattern: np.ndarray, device: torch.device) -> torch.Tensor:
    """Convert a (H, W) uint8 pattern to (1, H, W, 3) float32 [0,1]."""
    rgb = np.stack([pattern] * 3, axis=-1).astype(np.float32) / 255.0
    return torch.from_numpy(rgb).unsqueeze(0).to(device)
