"""Tests for resampling and the quantizer family."""

import numpy as np
import pytest

from bitdither_lib import (
    DitherMethod, ErrorDiffusionQuantizer, KERNELS, OrderedQuantizer, Resampler,
    ToneParameters, effective_threshold, get_quantizer,
)

ERROR_DIFFUSION = [
    DitherMethod.FLOYD_STEINBERG,
    DitherMethod.ATKINSON,
    DitherMethod.SIERRA_LITE,
    DitherMethod.BURKES,
]


class TestResampler:
    @pytest.mark.parametrize("src, scale, expected", [
        ((100, 50), 50, (50, 25)),
        ((7, 5), 33, (2, 1)),
        ((10, 10), 250, (25, 25)),
        ((3, 3), 1, (1, 1)),
        ((10, 10), 0, (1, 1)),
        ((10, 10), -20, (1, 1)),
        ((10, 10), float("nan"), (10, 10)),
    ])
    def test_working_size(self, src, scale, expected):
        assert Resampler.working_size(src[0], src[1], scale) == expected

    def test_downsample_picks_nearest_cells(self):
        field = np.arange(16, dtype=np.float64).reshape(4, 4)
        small = Resampler.downsample(field, 4, 4, 2, 2)
        np.testing.assert_array_equal(small, [[0, 2], [8, 10]])

    def test_downsample_non_integer_ratio(self):
        field = np.arange(16, dtype=np.float64).reshape(4, 4)
        small = Resampler.downsample(field, 4, 4, 3, 3)
        np.testing.assert_array_equal(small, field[:3, :3])

    def test_downsample_to_single_cell(self):
        field = np.arange(12, dtype=np.float64).reshape(3, 4)
        np.testing.assert_array_equal(Resampler.downsample(field, 4, 3, 1, 1), [[0]])

    def test_downsample_returns_independent_copy(self):
        field = np.zeros((4, 4))
        small = Resampler.downsample(field, 4, 4, 4, 4)
        small += 1
        assert np.all(field == 0)


class TestEffectiveThreshold:
    def test_default_levels_give_128(self):
        assert effective_threshold(ToneParameters()) == 128.0

    def test_rescaled_by_levels_span(self):
        assert effective_threshold(ToneParameters(black_point=0, white_point=127.5)) == pytest.approx(256.0)

    def test_degenerate_span_is_finite(self):
        value = effective_threshold(ToneParameters(black_point=90, white_point=90))
        assert np.isfinite(value)
        assert value == pytest.approx(128 * 255 / 1e-3)


class TestOrderedQuantizer:
    def test_uniform_mid_gray_matches_bayer_comparison(self):
        field = np.full((8, 8), 128.0)
        bits = OrderedQuantizer().quantize(field)
        ranks = np.tile(OrderedQuantizer.BAYER4x4, (2, 2))
        expected = (128 / 255 >= (ranks + 0.5) / 16).astype(np.uint8)
        np.testing.assert_array_equal(bits, expected)
        # ranks 0..7 light up: half of every tile
        assert bits.sum() == 32

    def test_ignores_threshold_argument(self):
        field = np.full((4, 4), 128.0)
        q = OrderedQuantizer()
        np.testing.assert_array_equal(q.quantize(field, threshold=10), q.quantize(field, threshold=250))

    def test_extremes(self):
        q = OrderedQuantizer()
        assert q.quantize(np.zeros((5, 5))).sum() == 0
        assert q.quantize(np.full((5, 5), 255.0)).sum() == 25

    def test_single_pixel_change_stays_local(self):
        rng = np.random.default_rng(0)
        field = rng.uniform(0, 255, size=(12, 12))
        changed = field.copy()
        changed[5, 7] = 255.0 - changed[5, 7]
        q = OrderedQuantizer()
        before = q.quantize(field.copy())
        after = q.quantize(changed)
        assert np.count_nonzero(before != after) <= 1

    def test_does_not_mutate_field(self):
        field = np.linspace(0, 255, 36).reshape(6, 6)
        snapshot = field.copy()
        OrderedQuantizer().quantize(field)
        np.testing.assert_array_equal(field, snapshot)

    def test_glitch_jitter_is_seeded(self):
        field = np.full((8, 8), 128.0)
        q = OrderedQuantizer()
        a = q.quantize(field, glitch=80, rng=np.random.default_rng(5))
        b = q.quantize(field, glitch=80, rng=np.random.default_rng(5))
        np.testing.assert_array_equal(a, b)
        assert set(np.unique(a)) <= {0, 1}


class TestErrorDiffusion:
    @pytest.mark.parametrize("method, total", [
        (DitherMethod.FLOYD_STEINBERG, 1.0),
        (DitherMethod.ATKINSON, 0.75),
        (DitherMethod.SIERRA_LITE, 1.0),
        (DitherMethod.BURKES, 1.0),
    ])
    def test_kernel_weight_totals(self, method, total):
        assert sum(w for _, _, w in KERNELS[method]) == pytest.approx(total)

    @pytest.mark.parametrize("method", ERROR_DIFFUSION)
    def test_kernels_only_point_forward(self, method):
        for dx, dy, _ in KERNELS[method]:
            assert dy > 0 or (dy == 0 and dx > 0)

    def test_two_by_two_scenario(self):
        field = np.array([[0.0, 0.0], [255.0, 255.0]])
        bits = get_quantizer(DitherMethod.FLOYD_STEINBERG).quantize(field, 128.0)
        np.testing.assert_array_equal(bits, [[0, 0], [1, 1]])
        # no error was generated, so nothing moved
        np.testing.assert_array_equal(field, [[0.0, 0.0], [255.0, 255.0]])

    def test_floyd_steinberg_impulse_distribution(self):
        field = np.zeros((5, 5))
        field[2, 2] = 100.0
        get_quantizer(DitherMethod.FLOYD_STEINBERG).quantize(field, 128.0)
        assert field[2, 3] == pytest.approx(100 * 7 / 16)
        assert field[3, 1] == pytest.approx(100 * 3 / 16)
        # cells before the impulse never receive error
        assert np.all(field[:2] == 0)
        assert np.all(field[2, :2] == 0)

    def test_strength_scales_carried_error(self):
        field = np.zeros((5, 5))
        field[2, 2] = 100.0
        get_quantizer(DitherMethod.FLOYD_STEINBERG).quantize(field, 128.0, strength=0.5)
        assert field[2, 3] == pytest.approx(50 * 7 / 16)
        assert field[3, 1] == pytest.approx(50 * 3 / 16)

    def test_atkinson_impulse_distribution(self):
        field = np.zeros((5, 5))
        field[2, 2] = 100.0
        get_quantizer(DitherMethod.ATKINSON).quantize(field, 128.0)
        assert field[2, 3] == pytest.approx(12.5)
        assert field[3, 1] == pytest.approx(12.5)

    def test_sierra_lite_impulse_distribution(self):
        field = np.zeros((5, 5))
        field[2, 2] = 100.0
        get_quantizer(DitherMethod.SIERRA_LITE).quantize(field, 128.0)
        assert field[2, 3] == pytest.approx(50.0)
        assert field[3, 1] == pytest.approx(25.0)
        # 25 from the impulse, 12.5 each from the visited (2, 3) and (3, 1)
        assert field[3, 2] == pytest.approx(50.0)
        assert field[3, 0] == 0.0

    def test_burkes_impulse_distribution(self):
        field = np.zeros((5, 7))
        field[2, 3] = 96.0
        get_quantizer(DitherMethod.BURKES).quantize(field, 128.0)
        assert field[2, 4] == pytest.approx(24.0)
        # 12 from the impulse, 6 from the visited (2, 4)
        assert field[2, 5] == pytest.approx(18.0)
        assert field[3, 0] == 0.0
        assert field[3, 1] == pytest.approx(6.0)
        # 12 from the impulse, 1.5 each from the visited (2, 4) and (3, 1)
        assert field[3, 2] == pytest.approx(15.0)

    @pytest.mark.parametrize("method", ERROR_DIFFUSION)
    def test_carried_error_is_conserved(self, method):
        source = np.full((24, 24), 100.0)
        field = source.copy()
        bits = get_quantizer(method).quantize(field, 128.0)

        # forward-only kernels: every sample is final by the time it is read
        read = np.clip(field, 0.0, 255.0)
        carried = read - 255.0 * bits
        h, w = field.shape
        dropped = 0.0
        for y in range(h):
            for x in range(w):
                kept = sum(weight for dx, dy, weight in KERNELS[method]
                           if 0 <= x + dx < w and 0 <= y + dy < h)
                dropped += carried[y, x] * (1.0 - kept)

        clipped = (field - read).sum()
        assert source.sum() == pytest.approx(255.0 * bits.sum() + dropped + clipped, rel=1e-9)

    @pytest.mark.parametrize("dtype", [np.uint8, np.int64])
    def test_integer_field_is_rejected(self, dtype):
        field = np.full((3, 3), 100, dtype=dtype)
        with pytest.raises(ValueError, match="float field"):
            get_quantizer(DitherMethod.FLOYD_STEINBERG).quantize(field, 128.0)

    @pytest.mark.parametrize("method", ERROR_DIFFUSION)
    @pytest.mark.parametrize("strength", [0.0, float("nan")])
    def test_zero_or_invalid_strength_is_flat_threshold(self, method, strength):
        rng = np.random.default_rng(11)
        field = rng.uniform(0, 255, size=(9, 9))
        snapshot = field.copy()
        bits = get_quantizer(method).quantize(field, 128.0, strength=strength)
        np.testing.assert_array_equal(bits, (snapshot >= 128.0).astype(np.uint8))
        np.testing.assert_array_equal(field, snapshot)

    @pytest.mark.parametrize("method", ERROR_DIFFUSION)
    def test_nan_samples_do_not_spread(self, method):
        field = np.full((6, 6), 200.0)
        field[0, 0] = np.nan
        bits = get_quantizer(method).quantize(field, 128.0)
        assert bits[0, 0] == 0
        assert np.isnan(field).sum() == 1
        assert set(np.unique(bits)) <= {0, 1}

    @pytest.mark.parametrize("method", [m for m in ERROR_DIFFUSION if m != DitherMethod.ATKINSON])
    def test_flat_field_preserves_mean(self, method):
        field = np.full((32, 32), 100.0)
        bits = get_quantizer(method).quantize(field, 128.0)
        assert abs(bits.mean() * 255 - 100) < 20

    def test_overflowing_values_are_clamped_on_read(self):
        field = np.array([[400.0, 0.0, 0.0]])
        get_quantizer(DitherMethod.FLOYD_STEINBERG).quantize(field, 128.0)
        # (255 - 255) error: the 400 is read as 255
        assert field[0, 1] == 0.0

    def test_glitch_threshold_is_seeded(self):
        field = np.full((10, 10), 128.0)
        q = get_quantizer(DitherMethod.BURKES)
        a = q.quantize(field.copy(), 128.0, glitch=40, rng=np.random.default_rng(9))
        b = q.quantize(field.copy(), 128.0, glitch=40, rng=np.random.default_rng(9))
        np.testing.assert_array_equal(a, b)


class TestDispatch:
    def test_ordered(self):
        assert isinstance(get_quantizer(DitherMethod.ORDERED), OrderedQuantizer)

    @pytest.mark.parametrize("method", ERROR_DIFFUSION)
    def test_error_diffusion(self, method):
        quantizer = get_quantizer(method)
        assert isinstance(quantizer, ErrorDiffusionQuantizer)
        assert quantizer.kernel == KERNELS[method]

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            get_quantizer("sharpie")
