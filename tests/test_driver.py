# tests/test_driver.py
import math
import numpy as np
import pytest

from rbergomi.config import DEFAULT_PARAMETERS, PricingConfig
from rbergomi.driver import (
    _batch_table,
    _static_schedule,
    payoff_samples,
    price,
    price_grid,
    simulate,
    simulate_sequential,
)
from rbergomi.entropy import GaussianSource, PresetSource, PseudoRandomSource, SobolSource
from rbergomi.errors import WorkerError
from rbergomi.grid import make_grid


@pytest.fixture(scope="module")
def small_grid():
    return make_grid(
        H=[0.07, 0.2, 0.07, 0.2],
        eta=[1.9, 1.2, 1.9, 1.5],
        rho=[-0.9, -0.7, -0.9, -0.7],
        T=[1.0, 0.5, 1.0, 2.0],
        K=[1.0, 1.0, 1.1, 0.9],
        xi=[0.04, 0.05, 0.04, 0.03],
    )


class FailingSource(GaussianSource):
    """Preset normals, except that one worker always fails."""

    index_addressable = True

    def __init__(self, gaussians, bad_worker):
        self.inner = PresetSource(gaussians)
        super().__init__(self.inner.n_steps, self.inner.n_sequences)
        self.n_samples = self.inner.n_samples
        self.bad_worker = bad_worker

    def draw(self, worker, start, count, out=None):
        if worker == self.bad_worker:
            raise FloatingPointError(f"bad block at {start}")
        return self.inner.draw(worker, start, count, out=out)


# --------------------------
# Scheduling
# --------------------------

def test_batch_table_covers_all_samples():
    table = _batch_table(10, 4)
    assert table == [(0, 0, 4), (1, 4, 4), (2, 8, 2)]


@pytest.mark.parametrize("n_batches,workers", [(10, 3), (3, 8), (1, 1), (16, 4)])
def test_static_schedule_contiguous(n_batches, workers):
    ranges = _static_schedule(n_batches, workers)
    assert len(ranges) == min(n_batches, workers)
    assert ranges[0][0] == 0 and ranges[-1][1] == n_batches
    for (lo0, hi0), (lo1, _hi1) in zip(ranges, ranges[1:]):
        assert hi0 == lo1
    sizes = [hi - lo for lo, hi in ranges]
    assert max(sizes) - min(sizes) <= 1


# --------------------------
# Reproducibility and worker invariance
# --------------------------

def test_preset_source_worker_invariant(small_grid):
    M, N = 300, 20
    g = np.random.default_rng(1).standard_normal((M, 2, N))
    ref = simulate(small_grid, N, M, source=PresetSource(g), workers=1, batch_size=32)
    for w in (2, 3, 7):
        acc = simulate(small_grid, N, M, source=PresetSource(g), workers=w, batch_size=32)
        assert np.array_equal(acc.sums, ref.sums)
        assert np.array_equal(acc.sumsq, ref.sumsq)


def test_sobol_worker_invariant(small_grid):
    M, N = 256, 16
    ref = simulate(small_grid, N, M, source=SobolSource(N, 2), workers=1, batch_size=16)
    acc = simulate(small_grid, N, M, source=SobolSource(N, 2), workers=4, batch_size=16)
    assert np.array_equal(acc.sums, ref.sums)
    assert np.array_equal(acc.sumsq, ref.sumsq)
    assert np.all(np.isfinite(acc.sums))


def test_pseudo_reproducible_for_fixed_workers(small_grid):
    a = simulate(small_grid, 16, 500, workers=3, batch_size=50, seed=99)
    b = simulate(small_grid, 16, 500, workers=3, batch_size=50, seed=99)
    c = simulate(small_grid, 16, 500, workers=3, batch_size=50, seed=100)
    assert np.array_equal(a.sums, b.sums)
    assert not np.array_equal(a.sums, c.sums)


def test_single_worker_matches_sequential(small_grid):
    kw = dict(batch_size=40, payoff="full", seed=[1, 2, 3])
    a = simulate(small_grid, 12, 200, workers=1, **kw)
    b = simulate_sequential(small_grid, 12, 200, **kw)
    assert np.array_equal(a.sums, b.sums)
    assert np.array_equal(a.sumsq, b.sumsq)


def test_sums_match_payoff_matrix(small_grid):
    M, N = 120, 10
    g = np.random.default_rng(4).standard_normal((M, 2, N))
    P = payoff_samples(small_grid, g, workers=2, batch_size=25)
    acc = simulate(small_grid, N, M, source=PresetSource(g), workers=2, batch_size=25)
    assert np.allclose(acc.sums, P.sum(axis=0), rtol=1e-12)
    assert np.allclose(acc.sumsq, (P ** 2).sum(axis=0), rtol=1e-12)
    assert acc.n_samples == M


# --------------------------
# Failures and validation
# --------------------------

def test_worker_failure_is_reported(small_grid, caplog):
    M, N = 64, 8
    g = np.random.default_rng(0).standard_normal((M, 2, N))
    with pytest.raises(WorkerError) as err:
        simulate(small_grid, N, M, source=FailingSource(g, bad_worker=1), workers=2, batch_size=16)
    assert [w for w, _e in err.value.failures] == [1]
    assert isinstance(err.value.failures[0][1], FloatingPointError)
    assert "worker 1 failed" in caplog.text


def test_source_mismatch_rejected(small_grid):
    with pytest.raises(ValueError):
        simulate(small_grid, 16, 10, source=SobolSource(16, 2), payoff="full")
    with pytest.raises(ValueError):
        simulate(small_grid, 16, 10, source=SobolSource(8, 2))
    with pytest.raises(ValueError):
        simulate(small_grid, 8, 10, source=PseudoRandomSource(1, 1, 8, 2), workers=2)
    with pytest.raises(ValueError):
        simulate(small_grid, 8, 100, source=PresetSource(np.zeros((10, 2, 8))))
    with pytest.raises(ValueError):
        simulate(small_grid, 8, 0)


# --------------------------
# Pricing entry points
# --------------------------

def test_price_returns_input_order():
    res = price(
        H=[0.2, 0.05], eta=[1.0, 1.5], rho=[-0.5, -0.8], T=[1.0, 0.5], K=[1.0, 1.05],
        xi=[0.04, 0.04], n_steps=16, n_samples=2000, workers=2, batch_size=256,
    )
    assert list(res.H) == [0.2, 0.05]
    assert list(res.K) == [1.0, 1.05]
    assert np.all(res.price > 0) and np.all(res.stat > 0)
    assert not res.iv_failed.any()
    assert res.meta["ordered"] is True


def test_price_grid_conditional_near_black_scholes():
    # eta = 0 collapses to Black-Scholes with vol sqrt(xi)
    from rbergomi.black_scholes import bs_call_forward
    xi, T = 0.04, 1.0
    grid = make_grid(H=[0.1], eta=[0.0], rho=[-0.7], T=[T], K=[1.0], xi=[xi])
    cfg = PricingConfig(n_steps=20, n_samples=20000, workers=2, batch_size=2048, seed=8)
    res = price_grid(grid, cfg)
    ref = bs_call_forward(1.0, 1.0, T, math.sqrt(xi))
    assert abs(res.price[0] - ref) < 4.0 * res.stat[0]
    assert res.iv[0] == pytest.approx(math.sqrt(xi), abs=0.01)


@pytest.mark.slow
def test_standard_error_halves_with_four_times_samples(small_grid):
    cfg = PricingConfig(n_steps=32, n_samples=4000, workers=2, batch_size=1000, seed=5)
    r1 = price_grid(small_grid, cfg)
    r4 = price_grid(small_grid, cfg.with_overrides(n_samples=16000))
    ratio = r4.stat / r1.stat
    assert np.all((ratio > 0.4) & (ratio < 0.6))


@pytest.mark.slow
def test_default_scenario_end_to_end():
    grid = make_grid(**DEFAULT_PARAMETERS)
    cfg = PricingConfig(n_steps=100, n_samples=100000, workers=4, batch_size=1024, seed=12345)
    res = price_grid(grid, cfg)
    assert len(res) == 2
    assert np.all(np.isfinite(res.price)) and np.all(res.price > 0)
    assert not res.iv_failed.any()
    assert np.all((res.iv > 0.0) & (res.iv < 3.0))
    assert np.all(res.stat < 0.05 * res.price)
    assert list(res.to_frame().columns) == ["xi", "H", "eta", "rho", "T", "K", "price", "iv", "stat"]


def test_pool_capped_by_batch_count(small_grid):
    acc = simulate(small_grid, 8, 40, workers=6, batch_size=16, seed=3)
    assert acc.workers == 3
    assert acc.worker_invariant is False

    cfg = PricingConfig(n_steps=8, n_samples=40, workers=6, batch_size=16, entropy="sobol")
    res = price_grid(small_grid, cfg)
    assert res.workers == 3
    assert res.meta["worker_invariant"] is True
