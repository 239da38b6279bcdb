import numpy as np
import pytest

from rbergomi.kernel import KernelCache, kernel_vector


@pytest.mark.parametrize("H", [0.02, 0.1, 0.3, 0.5, 0.7, 0.95])
def test_kernel_first_entry_zero(H):
    g = kernel_vector(H, 64)
    assert g.shape == (64,)
    assert g[0] == 0.0
    assert np.all(np.isfinite(g))


@pytest.mark.parametrize("H", [0.02, 0.1, 0.3, 0.45])
def test_kernel_non_increasing_for_rough(H):
    g = kernel_vector(H, 200)
    assert np.all(np.diff(g[1:]) <= 0.0)


@pytest.mark.parametrize("H", [0.55, 0.7, 0.95])
def test_kernel_non_decreasing_for_smooth(H):
    g = kernel_vector(H, 200)
    assert np.all(np.diff(g) >= 0.0)


def test_kernel_flat_at_half():
    g = kernel_vector(0.5, 20)
    assert np.allclose(g[1:], 1.0, rtol=0, atol=1e-14)


def test_kernel_matches_cell_integral():
    # kernel[k] is the integral of x^(H-1/2) over [k, k+1]
    H = 0.1
    g = kernel_vector(H, 6)
    for k in range(1, 6):
        x = np.linspace(k, k + 1, 20001)
        y = x ** (H - 0.5)
        ref = np.sum(0.5 * (y[1:] + y[:-1]) * np.diff(x))
        assert abs(g[k] - ref) < 1e-8


def test_kernel_bad_inputs():
    with pytest.raises(ValueError):
        kernel_vector(0.0, 10)
    with pytest.raises(ValueError):
        kernel_vector(1.0, 10)
    with pytest.raises(ValueError):
        kernel_vector(0.1, 0)


def test_cache_distinct_keys_and_order():
    cache = KernelCache([0.2, 0.05, 0.2, 0.05, 0.1], N=32)
    assert len(cache) == 3
    assert list(cache) == [0.05, 0.1, 0.2]
    assert np.array_equal(cache[0.1], kernel_vector(0.1, 32))
    assert cache.N == 32


def test_cache_entries_read_only_and_missing_key():
    cache = KernelCache([0.3], N=8)
    with pytest.raises(ValueError):
        cache[0.3][1] = 0.0
    with pytest.raises(KeyError):
        cache[0.31]
