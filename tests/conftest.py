import numpy as np
import pytest


def make_buffer(gray, alpha=255):
    """(H, W) luminance-like values -> opaque RGBA buffer with R=G=B."""
    gray = np.asarray(gray, dtype=np.uint8)
    buf = np.empty(gray.shape + (4,), dtype=np.uint8)
    buf[:, :, 0] = gray
    buf[:, :, 1] = gray
    buf[:, :, 2] = gray
    buf[:, :, 3] = alpha
    return buf


@pytest.fixture
def gradient_buffer():
    """16x24 RGBA buffer with a horizontal ramp and a vertical colour tint."""
    h, w = 16, 24
    xs = np.linspace(0, 255, w)
    ys = np.linspace(0, 255, h)
    buf = np.empty((h, w, 4), dtype=np.uint8)
    buf[:, :, 0] = np.rint(np.tile(xs, (h, 1)))
    buf[:, :, 1] = np.rint(np.tile(ys[:, None], (1, w)))
    buf[:, :, 2] = np.rint(np.tile(xs[::-1], (h, 1)))
    buf[:, :, 3] = 255
    return buf


@pytest.fixture
def noise_buffer():
    rng = np.random.default_rng(1234)
    return rng.integers(0, 256, size=(20, 20, 4), dtype=np.uint8)
