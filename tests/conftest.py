from __future__ import annotations

import numpy as np
import pytest

from promapblend.decoder import CapturedExposure, DecodedCorrespondences
from promapblend.graycode import (
    PatternConfig,
    generate_black,
    generate_pattern,
    generate_white,
)


class SyntheticScene:
    """Camera captures of a projector seen through a known pixel mapping.

    ``mapping(xs, ys)`` returns the (fractional) projector coordinates seen by
    every camera pixel; they are floored to the projector pixel that lights
    the camera pixel.  Camera pixels outside the projector frame stay dark.
    """

    def __init__(self, proj_w, proj_h, cam_w, cam_h, mapping):
        self.proj_w = proj_w
        self.proj_h = proj_h
        self.cam_w = cam_w
        self.cam_h = cam_h

        ys, xs = np.mgrid[0:cam_h, 0:cam_w].astype(np.float64)
        px, py = mapping(xs, ys)
        self.px = np.floor(px).astype(np.int64)
        self.py = np.floor(py).astype(np.int64)
        self.seen = (
            (self.px >= 0) & (self.px < proj_w)
            & (self.py >= 0) & (self.py < proj_h)
        )
        self._px = np.clip(self.px, 0, proj_w - 1)
        self._py = np.clip(self.py, 0, proj_h - 1)

    def capture(self, pattern: np.ndarray) -> np.ndarray:
        img = pattern[self._py, self._px].astype(np.float32) / 255.0
        return np.where(self.seen, img, 0.0).astype(np.float32)

    def white(self) -> np.ndarray:
        return self.capture(generate_white(self.proj_w, self.proj_h))

    def black(self) -> np.ndarray:
        return self.capture(generate_black(self.proj_w, self.proj_h))

    def exposures(self) -> list[CapturedExposure]:
        config = PatternConfig(self.proj_w, self.proj_h)
        return [
            CapturedExposure(
                self.capture(generate_pattern(spec, self.proj_w, self.proj_h)),
                spec,
            )
            for spec in config.pattern_sequence()
        ]


@pytest.fixture
def scene_factory():
    return SyntheticScene


def make_correspondences(
    cam_w: int,
    cam_h: int,
    proj_w: int,
    proj_h: int,
    x_start: int,
    x_stop: int,
) -> DecodedCorrespondences:
    """Projector covering camera columns [x_start, x_stop) one-to-one."""
    corr = DecodedCorrespondences.empty(cam_w, cam_h, proj_w, proj_h)
    xs = np.tile(np.arange(cam_w), cam_h)
    ys = np.repeat(np.arange(cam_h), cam_w)
    covered = (xs >= x_start) & (xs < x_stop)
    corr.projector_x[covered] = xs[covered] - x_start
    corr.projector_y[covered] = ys[covered]
    corr.valid_mask[covered] = True
    corr.confidence[covered] = 1.0
    return corr


@pytest.fixture
def corr_factory():
    return make_correspondences
