from __future__ import annotations

import numpy as np
import pytest
import torch

from promapblend.blending import (
    BlendMask,
    OverlapEdge,
    OverlapRegion,
    apply_curve,
    apply_overlap_blend,
)
from promapblend.config import BlendCurve

CONSERVATIVE = [BlendCurve.LINEAR, BlendCurve.SMOOTHSTEP, BlendCurve.COSINE]


def test_curve_values() -> None:
    assert apply_curve(0.25, BlendCurve.LINEAR) == pytest.approx(0.25)
    assert apply_curve(0.5, BlendCurve.SMOOTHSTEP) == pytest.approx(0.5)
    assert apply_curve(0.25, BlendCurve.SMOOTHSTEP) == pytest.approx(0.15625)
    assert apply_curve(0.0, BlendCurve.COSINE) == pytest.approx(0.0)
    assert apply_curve(1.0, BlendCurve.COSINE) == pytest.approx(1.0)
    assert apply_curve(0.5, BlendCurve.GAMMA) == pytest.approx(0.5 ** 2.2)
    assert apply_curve(0.5, "smoothstep") == pytest.approx(0.5)


@pytest.mark.parametrize("curve", list(BlendCurve))
def test_curve_keeps_input_kind(curve: BlendCurve) -> None:
    assert isinstance(apply_curve(0.3, curve), float)
    t = np.linspace(0.0, 1.0, 12).reshape(3, 4)
    out = apply_curve(t, curve)
    assert isinstance(out, np.ndarray)
    assert out.shape == (3, 4)


@pytest.mark.parametrize("curve", CONSERVATIVE)
def test_curves_are_symmetric(curve: BlendCurve) -> None:
    t = np.linspace(0.0, 1.0, 101)
    np.testing.assert_allclose(apply_curve(t, curve) + apply_curve(1.0 - t, curve), 1.0)


def test_new_mask_is_opaque() -> None:
    mask = BlendMask(8, 4)
    assert mask.data.shape == (32,)
    assert mask.data.dtype == np.float32
    assert (mask.data == 1.0).all()
    assert mask.curve is None

    with pytest.raises(ValueError):
        BlendMask(8, 4, data=np.ones(31))


def test_right_blend_profile() -> None:
    mask = BlendMask(10, 2)
    mask.apply_right_blend(4, BlendCurve.LINEAR)
    np.testing.assert_allclose(
        mask.as_image()[0], [1, 1, 1, 1, 1, 1, 1.0, 0.75, 0.5, 0.25],
    )
    np.testing.assert_array_equal(mask.as_image()[0], mask.as_image()[1])
    assert mask.curve is BlendCurve.LINEAR


def test_left_blend_profile() -> None:
    mask = BlendMask(10, 1)
    mask.apply_left_blend(4, BlendCurve.LINEAR)
    np.testing.assert_allclose(
        mask.as_image()[0], [0.0, 0.25, 0.5, 0.75, 1, 1, 1, 1, 1, 1],
    )


def test_vertical_blends_act_on_rows() -> None:
    mask = BlendMask(3, 8)
    mask.apply_top_blend(4, BlendCurve.LINEAR)
    mask.apply_bottom_blend(2, BlendCurve.LINEAR)
    np.testing.assert_allclose(
        mask.as_image()[:, 1], [0.0, 0.25, 0.5, 0.75, 1, 1, 1.0, 0.5],
    )


def test_zero_width_is_noop() -> None:
    mask = BlendMask(6, 3)
    for apply in (
        mask.apply_left_blend, mask.apply_right_blend,
        mask.apply_top_blend, mask.apply_bottom_blend,
    ):
        apply(0, BlendCurve.SMOOTHSTEP)
    assert (mask.data == 1.0).all()
    assert mask.curve is None


def test_blend_wider_than_mask_is_clamped() -> None:
    mask = BlendMask(4, 1)
    mask.apply_right_blend(8, BlendCurve.LINEAR)
    np.testing.assert_allclose(mask.data, [1.0, 0.875, 0.75, 0.625])


def test_blends_accumulate_multiplicatively() -> None:
    mask = BlendMask(8, 1)
    mask.apply_right_blend(4, BlendCurve.LINEAR)
    mask.apply_right_blend(4, BlendCurve.LINEAR)
    np.testing.assert_allclose(mask.data[4:], [1.0, 0.5625, 0.25, 0.0625])

    mask.reset()
    mask.apply_left_blend(3, BlendCurve.SMOOTHSTEP)
    mask.apply_right_blend(3, BlendCurve.SMOOTHSTEP)
    assert mask.data[0] == pytest.approx(0.0)
    assert mask.data[3] == pytest.approx(1.0)
    assert mask.data[4] == pytest.approx(1.0)
    assert 0.0 < mask.data[-1] < 1.0


@pytest.mark.parametrize("curve", CONSERVATIVE)
def test_horizontal_pair_conserves_brightness(curve: BlendCurve) -> None:
    rng = np.random.default_rng(1234)
    for _ in range(50):
        width = int(rng.integers(1, 200))
        size_a = width + int(rng.integers(0, 300))
        size_b = width + int(rng.integers(0, 300))
        overlap = OverlapRegion(0, 1, width, OverlapEdge.RIGHT)
        a, b = BlendMask(size_a, 2), BlendMask(size_b, 2)

        apply_overlap_blend(a, b, overlap, curve)

        start = size_a - width
        for p in rng.integers(0, width, size=5):
            total = a.as_image()[1, start + p] + b.as_image()[1, p]
            assert total == pytest.approx(1.0, abs=1e-5)


@pytest.mark.parametrize("curve", CONSERVATIVE)
def test_vertical_pair_conserves_brightness(curve: BlendCurve) -> None:
    rng = np.random.default_rng(99)
    for _ in range(50):
        width = int(rng.integers(1, 120))
        height = width + int(rng.integers(0, 200))
        # B sits above A: the overlap is on A's top edge.
        overlap = OverlapRegion(0, 1, width, OverlapEdge.TOP)
        a, b = BlendMask(3, height), BlendMask(3, height)

        apply_overlap_blend(a, b, overlap, curve)

        start = height - width
        for p in rng.integers(0, width, size=5):
            total = a.as_image()[p, 0] + b.as_image()[start + p, 0]
            assert total == pytest.approx(1.0, abs=1e-5)


def test_gamma_does_not_conserve() -> None:
    a, b = BlendMask(8, 1), BlendMask(8, 1)
    apply_overlap_blend(a, b, OverlapRegion(0, 1, 4, OverlapEdge.RIGHT), BlendCurve.GAMMA)
    assert a.data[5] + b.data[1] != pytest.approx(1.0, abs=1e-3)


def test_quantised_outputs() -> None:
    mask = BlendMask(4, 2)
    mask.apply_left_blend(2, BlendCurve.LINEAR)

    u8 = mask.to_uint8()
    assert u8.shape == (2, 4) and u8.dtype == np.uint8
    assert u8[0, 0] == 0 and u8[0, 3] == 255

    u16 = mask.to_uint16()
    assert u16.dtype == np.uint16 and u16[0, 3] == 65535

    tensor = mask.to_tensor(torch.device("cpu"))
    assert tensor.shape == (1, 2, 4, 1)
    assert tensor[0, 0, 1, 0].item() == pytest.approx(0.5)
