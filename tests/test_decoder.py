from __future__ import annotations

import numpy as np
import pytest
import torch

from promapblend.config import DecoderSettings
from promapblend.decoder import (
    CapturedExposure,
    CorrespondenceDecoder,
    DecodedCorrespondences,
    average_frames,
    detect_float_scale,
    to_gray_float,
)
from promapblend.errors import CalibrationError, MissingExposureError
from promapblend.graycode import PatternDirection, PatternSpec, generate_pattern


def _decode(scene, decoder=None, **kwargs):
    decoder = decoder or CorrespondenceDecoder()
    return decoder.decode(
        scene.white(), scene.black(), scene.exposures(),
        kwargs.get("projector_width", scene.proj_w),
        kwargs.get("projector_height", scene.proj_h),
    )


def test_direct_view_decodes_every_pixel(scene_factory) -> None:
    scene = scene_factory(64, 32, 64, 32, lambda xs, ys: (xs, ys))
    corr = _decode(scene)

    assert corr.valid_count() == 64 * 32
    np.testing.assert_array_equal(corr.projector_x, scene.px.ravel())
    np.testing.assert_array_equal(corr.projector_y, scene.py.ravel())
    np.testing.assert_allclose(corr.confidence, 1.0)
    assert corr.get(10, 5) == (10, 5)
    assert corr.coverage == pytest.approx(1.0)


def test_non_power_of_two_projector(scene_factory) -> None:
    scene = scene_factory(100, 30, 50, 30, lambda xs, ys: (2.0 * xs, ys))
    corr = _decode(scene)

    assert corr.valid_count() == 50 * 30
    assert corr.get(49, 29) == (98, 29)
    assert corr.get(0, 0) == (0, 0)


def test_unlit_pixels_are_invalid(scene_factory) -> None:
    # Only camera columns 40..79 see the projector.
    scene = scene_factory(64, 16, 80, 16, lambda xs, ys: (xs - 40, ys))
    corr = _decode(scene)

    assert corr.valid_count() == 40 * 16
    assert corr.get(39, 3) is None
    assert corr.get(40, 3) == (0, 3)
    assert corr.projector_x[3 * 80 + 10] == -1
    assert corr.confidence[3 * 80 + 10] == 0.0


def test_decoded_values_outside_projector_are_rejected(scene_factory) -> None:
    scene = scene_factory(128, 8, 128, 8, lambda xs, ys: (xs, ys))
    # 100 and 128 both need 7 bits, so the codes decode but columns >= 100
    # fall outside the claimed projector.
    corr = _decode(scene, projector_width=100)

    assert corr.valid_count() == 100 * 8
    assert corr.get(99, 0) == (99, 0)
    assert corr.get(100, 0) is None


def test_no_contrast_returns_empty_map(scene_factory) -> None:
    scene = scene_factory(32, 16, 32, 16, lambda xs, ys: (xs, ys))
    black = scene.black()
    corr = CorrespondenceDecoder().decode(
        black, black, scene.exposures(), 32, 16,
    )

    assert corr.is_empty
    assert corr.stats["lit"] == 0
    assert (corr.projector_x == -1).all()
    assert (corr.projector_y == -1).all()


def test_dim_projector_below_contrast_threshold(scene_factory) -> None:
    scene = scene_factory(32, 16, 32, 16, lambda xs, ys: (xs, ys))
    dim_white = scene.white() * 0.05
    corr = CorrespondenceDecoder().decode(
        dim_white, scene.black(), scene.exposures(), 32, 16,
    )
    assert corr.is_empty


def test_ambiguous_msb_is_rejected(scene_factory) -> None:
    scene = scene_factory(32, 16, 32, 16, lambda xs, ys: (xs, ys))
    exposures = scene.exposures()
    for exp in exposures:
        if exp.spec.direction is PatternDirection.HORIZONTAL and exp.spec.bit_index == 0:
            exp.image = exp.image.copy()
            exp.image[:, :8] = 0.5

    corr = CorrespondenceDecoder().decode(
        scene.white(), scene.black(), exposures, 32, 16,
    )

    assert corr.valid_count() == (32 - 8) * 16
    assert corr.get(7, 0) is None
    assert corr.get(8, 0) == (8, 0)


def test_weak_lsb_lowers_confidence_but_keeps_pixel(scene_factory) -> None:
    scene = scene_factory(32, 16, 32, 16, lambda xs, ys: (xs, ys))
    exposures = scene.exposures()
    for exp in exposures:
        if exp.spec.direction is PatternDirection.HORIZONTAL and exp.spec.bit_index == 4:
            # Shrink the finest horizontal bit's margin to 0.2 without flipping it.
            exp.image = 0.4 + 0.2 * exp.image

    corr = CorrespondenceDecoder().decode(
        scene.white(), scene.black(), exposures, 32, 16,
    )

    assert corr.valid_count() == 32 * 16
    assert corr.get(5, 5) == (5, 5)
    # x margin: (4 * 1.0 + 0.2) / 5, y margin 1.0
    assert corr.confidence[0] == pytest.approx(0.5 * (0.84 + 1.0), abs=1e-5)


def test_missing_exposure_raises(scene_factory) -> None:
    scene = scene_factory(32, 16, 32, 16, lambda xs, ys: (xs, ys))
    exposures = [
        e for e in scene.exposures()
        if not (e.spec.direction is PatternDirection.VERTICAL
                and e.spec.bit_index == 2 and e.spec.inverted)
    ]
    with pytest.raises(MissingExposureError) as info:
        CorrespondenceDecoder().decode(
            scene.white(), scene.black(), exposures, 32, 16,
        )
    assert info.value.details["bit_index"] == 2
    assert info.value.details["inverted"] is True


def _horizontal_exposures(scene, total_bits: int) -> list[CapturedExposure]:
    exposures = []
    for bit in range(total_bits):
        for inverted in (False, True):
            spec = PatternSpec(bit, total_bits, PatternDirection.HORIZONTAL, inverted)
            image = scene.capture(generate_pattern(spec, scene.proj_w, scene.proj_h))
            exposures.append(CapturedExposure(image, spec))
    return exposures


def _vertical_exposures(scene) -> list[CapturedExposure]:
    return [
        e for e in scene.exposures() if e.spec.direction is PatternDirection.VERTICAL
    ]


def test_code_width_follows_exposure_metadata(scene_factory) -> None:
    # The renderer used 6-bit codes for a 32 pixel wide projector.
    scene = scene_factory(32, 16, 32, 16, lambda xs, ys: (xs, ys))
    exposures = _horizontal_exposures(scene, 6) + _vertical_exposures(scene)

    corr = CorrespondenceDecoder().decode(
        scene.white(), scene.black(), exposures, 32, 16,
    )

    assert corr.valid_count() == 32 * 16
    assert corr.get(5, 5) == (5, 5)
    assert corr.get(20, 3) == (20, 3)


def test_inconsistent_code_width_raises(scene_factory) -> None:
    scene = scene_factory(32, 16, 32, 16, lambda xs, ys: (xs, ys))
    exposures = scene.exposures()
    odd = PatternSpec(0, 6, PatternDirection.HORIZONTAL, False)
    exposures[0] = CapturedExposure(
        scene.capture(generate_pattern(odd, 32, 16)), odd,
    )

    with pytest.raises(CalibrationError, match="Inconsistent horizontal"):
        CorrespondenceDecoder().decode(
            scene.white(), scene.black(), exposures, 32, 16,
        )


def test_code_too_narrow_for_projector_raises(scene_factory) -> None:
    scene = scene_factory(32, 16, 32, 16, lambda xs, ys: (xs, ys))
    exposures = _horizontal_exposures(scene, 3) + _vertical_exposures(scene)

    with pytest.raises(CalibrationError, match="cannot address 32") as info:
        CorrespondenceDecoder().decode(
            scene.white(), scene.black(), exposures, 32, 16,
        )
    assert info.value.details["total_bits"] == 3


def test_float_frames_share_the_white_scale(scene_factory) -> None:
    # 0..255 float captures; the dark black reference alone would look
    # already normalised.
    scene = scene_factory(32, 16, 32, 16, lambda xs, ys: (xs, ys))
    white = scene.white() * 255.0
    black = np.full((16, 32), 1.2, dtype=np.float32)
    exposures = [
        CapturedExposure(e.image * 255.0, e.spec) for e in scene.exposures()
    ]

    corr = CorrespondenceDecoder().decode(white, black, exposures, 32, 16)

    assert corr.stats["lit"] == 32 * 16
    assert corr.valid_count() == 32 * 16
    assert corr.get(7, 9) == (7, 9)


def test_spatial_consistency_rejects_outlier(scene_factory) -> None:
    scene = scene_factory(64, 32, 64, 32, lambda xs, ys: (xs, ys))
    exposures = scene.exposures()
    for exp in exposures:
        if exp.spec.direction is PatternDirection.HORIZONTAL:
            exp.image = exp.image.copy()
            exp.image[10, 10] = exp.image[10, 50]

    plain = CorrespondenceDecoder().decode(
        scene.white(), scene.black(), exposures, 64, 32,
    )
    assert plain.get(10, 10) == (50, 10)

    filtered = CorrespondenceDecoder(
        DecoderSettings(spatial_consistency=True),
    ).decode(scene.white(), scene.black(), exposures, 64, 32)
    assert filtered.get(10, 10) is None
    assert filtered.get(20, 20) == (20, 20)


def test_mismatched_exposure_size_is_resized(scene_factory) -> None:
    scene = scene_factory(16, 8, 16, 8, lambda xs, ys: (xs, ys))
    exposures = scene.exposures()
    exposures[0] = CapturedExposure(
        np.repeat(np.repeat(exposures[0].image, 2, axis=0), 2, axis=1),
        exposures[0].spec,
    )
    corr = CorrespondenceDecoder().decode(
        scene.white(), scene.black(), exposures, 16, 8,
    )
    assert corr.camera_width == 16
    assert corr.camera_height == 8


def test_torch_frames_are_accepted(scene_factory) -> None:
    scene = scene_factory(16, 8, 16, 8, lambda xs, ys: (xs, ys))
    white = torch.from_numpy(scene.white())[None, :, :, None]
    corr = CorrespondenceDecoder().decode(
        white, scene.black(), scene.exposures(), 16, 8,
    )
    assert corr.valid_count() == 16 * 8


# -- Frame helpers -------------------------------------------------------------


def test_to_gray_float_handles_dtypes() -> None:
    rgb = np.full((4, 5, 3), 255, dtype=np.uint8)
    gray = to_gray_float(rgb)
    assert gray.shape == (4, 5)
    assert gray.dtype == np.float32
    np.testing.assert_allclose(gray, 1.0, atol=1e-3)

    deep = np.full((4, 5), 65535, dtype=np.uint16)
    np.testing.assert_allclose(to_gray_float(deep), 1.0)

    tensor = torch.full((1, 4, 5, 3), 0.5)
    np.testing.assert_allclose(to_gray_float(tensor), 0.5, atol=1e-3)

    wide = np.full((2, 2), 127.5, dtype=np.float32)
    np.testing.assert_allclose(to_gray_float(wide), 0.5)


def test_explicit_float_scale() -> None:
    assert detect_float_scale(np.zeros((2, 2), dtype=np.uint8)) is None
    assert detect_float_scale(np.full((2, 2), 0.9, dtype=np.float32)) == 1.0
    assert detect_float_scale(torch.full((1, 2, 2, 1), 200.0)) == 255.0

    dark = np.full((2, 2), 1.2, dtype=np.float32)
    np.testing.assert_allclose(to_gray_float(dark), 1.2)
    np.testing.assert_allclose(to_gray_float(dark, 255.0), 1.2 / 255.0)
    # Integer frames ignore the float scale.
    byte = np.full((2, 2), 255, dtype=np.uint8)
    np.testing.assert_allclose(to_gray_float(byte, 1.0), 1.0)


def test_average_frames() -> None:
    a = np.zeros((4, 4), dtype=np.float32)
    b = np.ones((4, 4), dtype=np.float32)
    np.testing.assert_allclose(average_frames([a, b]), 0.5)

    big = np.ones((8, 8), dtype=np.float32)
    out = average_frames([a, big], target_shape=(4, 4))
    assert out.shape == (4, 4)
    np.testing.assert_allclose(out, 0.5)

    with pytest.raises(ValueError):
        average_frames([])


def test_correspondence_length_invariant() -> None:
    with pytest.raises(ValueError):
        DecodedCorrespondences(
            camera_width=4,
            camera_height=4,
            projector_width=8,
            projector_height=8,
            projector_x=np.zeros(15),
            projector_y=np.zeros(16),
            valid_mask=np.ones(16, dtype=bool),
            confidence=np.ones(16),
        )


def test_negative_coordinates_are_not_usable() -> None:
    corr = DecodedCorrespondences.empty(2, 1, 8, 8)
    corr.valid_mask[:] = True
    corr.projector_x[:] = [3, -1]
    corr.projector_y[:] = [2, 4]

    assert corr.get(0, 0) == (3, 2)
    assert corr.get(1, 0) is None
    assert corr.valid_count() == 1
