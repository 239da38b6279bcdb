# rbergomi/driver.py
"""
Parallel Monte Carlo driver for rBergomi grid pricing.

The M samples are cut into fixed batches. Contiguous runs of batches are
assigned statically to a fixed pool of worker threads (fork-join, one task per
worker). For every batch a worker draws the Gaussians, sweeps the whole
parameter grid with its own PathEvaluator and keeps private sums of payoff and
payoff^2 per grid index. After the join the per-batch partials are added up in
batch order, which is the only synchronisation point besides the Sobol draw.

Summing in batch order makes the result independent of how batches were
distributed, so index-addressable sources (Sobol, preset arrays) give the same
bits for any worker count. The pseudo-random source uses one stream per
worker, so there results change with the worker count but not between runs.

Key functions:
    simulate(...)                -> Accumulated sums over the pool
    simulate_sequential(...)     -> the same computation in the calling thread
    price_grid(grid, config)     -> PricingResult
    price(H, eta, rho, T, K, xi) -> PricingResult in input order
    payoff_samples(...)          -> per-sample payoff matrix for given Gaussians
    incremental_consistency(...) -> max |incremental - full recompute| payoff gap
"""

from __future__ import annotations
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import List, Optional, Tuple

import numpy as np

from rbergomi.config import PricingConfig
from rbergomi.convolution import Convolver, SpectralWorkspace
from rbergomi.entropy import GaussianSource, PresetSource, PseudoRandomSource, make_source
from rbergomi.errors import WorkerError
from rbergomi.evaluator import PathEvaluator, PayoffMode, n_sequences_for
from rbergomi.grid import ParameterGrid, make_grid
from rbergomi.kernel import KernelCache
from rbergomi.results import Accumulated, PricingResult, aggregate


logger = logging.getLogger(__name__)

# Try to avoid thread oversubscription when we parallelize at Python level.
# Respect existing env if the user already configured them.
for _var in ("OMP_NUM_THREADS", "MKL_NUM_THREADS", "OPENBLAS_NUM_THREADS", "NUMEXPR_NUM_THREADS"):
    if _var not in os.environ:
        os.environ[_var] = "1"


# ---------- batching ----------

def _split_batches(n, batch_size):
    n = int(n); batch_size = int(max(1, batch_size))
    sizes = []
    done = 0
    while done < n:
        take = min(batch_size, n - done)
        sizes.append(take)
        done += take
    return sizes


def _batch_table(n_samples, batch_size) -> List[Tuple[int, int, int]]:
    """(batch index, first sample, count) for every batch."""
    out = []
    start = 0
    for b, size in enumerate(_split_batches(n_samples, batch_size)):
        out.append((b, start, size))
        start += size
    return out


def _static_schedule(n_batches, workers) -> List[Tuple[int, int]]:
    """Contiguous [lo, hi) batch ranges, one per worker, sizes differ by at most one."""
    workers = int(max(1, min(workers, n_batches)))
    base, extra = divmod(int(n_batches), workers)
    ranges = []
    lo = 0
    for w in range(workers):
        hi = lo + base + (1 if w < extra else 0)
        ranges.append((lo, hi))
        lo = hi
    return ranges


# ---------- per-worker arena ----------

class WorkerArena:
    """
    Everything one worker owns for the whole run: spectral workspace,
    convolver, path buffers, evaluator and per-batch partial sums.
    Allocated once before the pool starts.
    """

    def __init__(self, index: int, grid: ParameterGrid, kernels: KernelCache, n_steps: int,
                 batch_size: int, payoff=PayoffMode.CONDITIONAL, fft_backend="numpy",
                 record: Optional[np.ndarray] = None):
        self.index = int(index)
        self.grid = grid
        self.workspace = SpectralWorkspace(n_steps, batch_size=batch_size, backend=fft_backend)
        self.convolver = Convolver(self.workspace)
        self.evaluator = PathEvaluator(grid, kernels, self.convolver, payoff=payoff)
        self.partials = {}
        self.record = record
        self.samples_done = 0

    def run_batch(self, source: GaussianSource, batch: int, start: int, count: int) -> None:
        ev = self.evaluator
        block = source.draw(self.index, start, count, out=ev.state.gauss[:count])
        ev.load(block)
        L = self.grid.size()
        s = np.zeros(L)
        s2 = np.zeros(L)
        for i in range(L):
            p = ev.evaluate(i)
            s[i] = p.sum()
            s2[i] = np.dot(p, p)
            if self.record is not None:
                self.record[start:start + count, i] = p
        self.partials[batch] = (s, s2)
        self.samples_done += count

    def run(self, source: GaussianSource, batches) -> "WorkerArena":
        t0 = time.time()
        for b, start, count in batches:
            self.run_batch(source, b, start, count)
        logger.debug("worker %d: %d batches, %d samples in %.3fs",
                     self.index, len(batches), self.samples_done, time.time() - t0)
        return self


def _reduce(arenas, L, n_samples, source: GaussianSource) -> Accumulated:
    partials = {}
    for a in arenas:
        partials.update(a.partials)
    sums = np.zeros(L)
    sumsq = np.zeros(L)
    for b in sorted(partials):
        s, s2 = partials[b]
        sums += s
        sumsq += s2
    return Accumulated(sums=sums, sumsq=sumsq, n_samples=int(n_samples),
                       workers=len(arenas), worker_invariant=bool(source.index_addressable))


def _check_source(source: GaussianSource, n_steps, payoff, workers, n_samples):
    need = n_sequences_for(payoff)
    if source.n_steps != n_steps:
        raise ValueError(f"source has N={source.n_steps}, expected {n_steps}")
    if source.n_sequences != need:
        raise ValueError(f"{PayoffMode.parse(payoff).value} payoff needs {need} sequences, source has {source.n_sequences}")
    if isinstance(source, PseudoRandomSource) and source.n_workers < workers:
        raise ValueError(f"source has {source.n_workers} streams for {workers} workers")
    if isinstance(source, PresetSource) and source.n_samples < n_samples:
        raise ValueError(f"preset holds {source.n_samples} samples, {n_samples} requested")


def _prepare(grid, n_steps, n_samples, source, workers, batch_size, payoff, seed, entropy):
    n_steps = int(n_steps); n_samples = int(n_samples)
    workers = int(workers); batch_size = int(batch_size)
    if n_steps < 1 or n_samples < 1:
        raise ValueError("n_steps and n_samples must be >= 1")
    if workers < 1 or batch_size < 1:
        raise ValueError("workers and batch_size must be >= 1")
    payoff = PayoffMode.parse(payoff)
    if source is None:
        source = make_source(entropy, n_steps, n_sequences_for(payoff), n_workers=workers, seed=seed)
    _check_source(source, n_steps, payoff, workers, n_samples)
    kernels = KernelCache(grid.unique_h(), n_steps)
    batches = _batch_table(n_samples, min(batch_size, n_samples))
    return n_steps, n_samples, workers, min(batch_size, n_samples), payoff, source, kernels, batches


# ---------- drivers ----------

def simulate(
    grid: ParameterGrid,
    n_steps: int,
    n_samples: int,
    source: Optional[GaussianSource] = None,
    workers: int = 1,
    batch_size: int = 1024,
    payoff="conditional",
    fft_backend="numpy",
    seed=12345,
    entropy="pseudo",
    record: Optional[np.ndarray] = None,
) -> Accumulated:
    """
    Run the Monte Carlo sweep on a pool of `workers` threads.

    Parameters
    ----------
    grid : ParameterGrid
        Parameter tuples, read-only for the run.
    n_steps, n_samples : int
        Time steps N and Monte Carlo samples M.
    source : GaussianSource or None
        Entropy source; built from `entropy` and `seed` if None.
    workers : int
        Pool size. Worker w uses stream w of a pseudo-random source.
    batch_size : int
        Samples evaluated together in one vectorized block.
    payoff : str or PayoffMode
        'conditional' or 'full'.
    fft_backend : str
        'numpy' or 'scipy'.
    record : ndarray or None
        Optional (M, grid size) array receiving every payoff.

    Returns
    -------
    Accumulated
        Sums of payoff and payoff^2 per grid index, in grid order, with the
        pool size actually used (at most the number of batches).

    Raises
    ------
    WorkerError
        After the join, if any worker raised.

    Notes
    -----
    Partial sums are kept per batch, not per worker, so that the final
    reduction runs in batch order whatever the schedule. This costs
    2 * ceil(M / batch_size) * grid size floats until the join.
    """
    (n_steps, n_samples, workers, batch_size, payoff,
     source, kernels, batches) = _prepare(grid, n_steps, n_samples, source, workers,
                                          batch_size, payoff, seed, entropy)
    schedule = _static_schedule(len(batches), workers)
    arenas = [WorkerArena(w, grid, kernels, n_steps, batch_size, payoff, fft_backend, record)
              for w in range(len(schedule))]
    logger.info("simulate: N=%d M=%d grid=%d workers=%d batches=%d payoff=%s source=%s worker_invariant=%s",
                n_steps, n_samples, grid.size(), len(arenas), len(batches),
                payoff.value, type(source).__name__, source.index_addressable)

    with ThreadPoolExecutor(max_workers=len(arenas), thread_name_prefix="rbergomi") as ex:
        futures = [ex.submit(arena.run, source, batches[lo:hi])
                   for arena, (lo, hi) in zip(arenas, schedule)]
        wait(futures)

    failures = [(w, f.exception()) for w, f in enumerate(futures) if f.exception() is not None]
    if failures:
        for w, exc in failures:
            logger.error("worker %d failed: %r", w, exc)
        raise WorkerError(failures) from failures[0][1]

    return _reduce(arenas, grid.size(), n_samples, source)


def simulate_sequential(
    grid: ParameterGrid,
    n_steps: int,
    n_samples: int,
    source: Optional[GaussianSource] = None,
    batch_size: int = 1024,
    payoff="conditional",
    fft_backend="numpy",
    seed=12345,
    entropy="pseudo",
    record: Optional[np.ndarray] = None,
) -> Accumulated:
    """Same computation as simulate(workers=1), without a thread pool."""
    (n_steps, n_samples, _w, batch_size, payoff,
     source, kernels, batches) = _prepare(grid, n_steps, n_samples, source, 1,
                                          batch_size, payoff, seed, entropy)
    arena = WorkerArena(0, grid, kernels, n_steps, batch_size, payoff, fft_backend, record)
    arena.run(source, batches)
    return _reduce([arena], grid.size(), n_samples, source)


def price_grid(grid: ParameterGrid, config: Optional[PricingConfig] = None,
               source: Optional[GaussianSource] = None) -> PricingResult:
    """Simulate and aggregate; results come back in the grid's input order."""
    config = (config or PricingConfig()).validate()
    t0 = time.time()
    acc = simulate(
        grid, config.n_steps, config.n_samples, source=source,
        workers=config.workers, batch_size=config.batch_size,
        payoff=config.payoff, fft_backend=config.fft_backend,
        seed=config.seed, entropy=config.entropy,
    )
    elapsed = time.time() - t0
    logger.info("simulation finished in %.3fs", elapsed)
    return aggregate(
        grid, acc, n_steps=config.n_steps, workers=acc.workers, elapsed=elapsed,
        iv_tol=config.iv_tol, iv_maxiter=config.iv_maxiter,
        meta=dict(payoff=config.payoff, entropy=config.entropy,
                  fft_backend=config.fft_backend, ordered=grid.ordered,
                  worker_invariant=acc.worker_invariant),
    )


def price(H, eta, rho, T, K, xi, config: Optional[PricingConfig] = None, **overrides) -> PricingResult:
    """
    Price European calls for co-indexed parameter arrays.

    Keyword overrides replace fields of `config`, e.g. price(..., n_samples=20000).
    """
    config = (config or PricingConfig()).with_overrides(**overrides)
    grid = make_grid(H, eta, rho, T, K, xi, ordered=config.ordered)
    return price_grid(grid, config)


# ---------- diagnostics ----------

def payoff_samples(grid: ParameterGrid, gaussians, payoff="conditional", workers: int = 1,
                   batch_size: int = 1024, fft_backend="numpy") -> np.ndarray:
    """
    Payoff of every sample at every grid index for explicit Gaussians of shape
    (M, n_sequences, N). Returns an (M, grid size) matrix in grid order.
    """
    source = PresetSource(gaussians)
    out = np.empty((source.n_samples, grid.size()))
    simulate(grid, source.n_steps, source.n_samples, source=source, workers=workers,
             batch_size=batch_size, payoff=payoff, fft_backend=fft_backend, record=out)
    return out


def incremental_consistency(grid: ParameterGrid, gaussians, payoff="conditional",
                            batch_size: int = 256, fft_backend="numpy") -> float:
    """
    Largest absolute payoff difference between the incremental cascade and a
    full recompute at every index, over all samples in `gaussians`. The two
    evaluators use separate buffers and workspaces.
    """
    source = PresetSource(gaussians)
    N = source.n_steps
    kernels = KernelCache(grid.unique_h(), N)
    bs = int(min(batch_size, source.n_samples))

    def _evaluator():
        ws = SpectralWorkspace(N, batch_size=bs, backend=fft_backend)
        return PathEvaluator(grid, kernels, Convolver(ws), payoff=payoff)

    inc, full = _evaluator(), _evaluator()
    worst = 0.0
    for _b, start, count in _batch_table(source.n_samples, bs):
        block = source.draw(0, start, count)
        a = inc.sweep(block)
        b = full.sweep(block, force=True)
        worst = max(worst, float(np.max(np.abs(a - b))))
    if worst > 0.0:
        logger.debug("incremental vs full recompute: max |diff| = %.3e", worst)
    return worst
