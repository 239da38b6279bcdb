# rbergomi/entropy.py
"""
Sources of the standard normal increments that drive each Monte Carlo sample.

Every source hands out blocks of shape (count, n_sequences, N) for the
samples start .. start+count-1 on behalf of one worker:

    PseudoRandomSource   one independent numpy Generator per worker, seeded
                         from a master seed via SeedSequence.spawn
    SobolSource          unscrambled Sobol points mapped through the normal
                         quantile; deterministic in the sample index
    PresetSource         replays a fixed array (tests, payoff_samples)

Sequence 0 is W1 (drives the volatility and the spot), sequence 1 is W1perp
(the orthogonal part of the first hybrid cell) and sequence 2, when present,
is Wperp (the orthogonal spot driver for the full-path payoff).
"""

from __future__ import annotations
import logging
import threading
import warnings
from typing import List, Optional, Sequence, Union

import numpy as np
from numpy.random import SeedSequence
from scipy.stats import norm, qmc


logger = logging.getLogger(__name__)

# scipy.stats.qmc.Sobol has direction numbers up to this dimension
SOBOL_MAX_DIM = 21201


def child_seeds(base_seed, n_children) -> List[int]:
    """Expand one seed (or seed vector) into n independent integer seeds."""
    if isinstance(base_seed, (list, tuple, np.ndarray)):
        ss = SeedSequence([int(s) for s in base_seed])
    else:
        ss = SeedSequence(int(base_seed))
    kids = ss.spawn(int(n_children))
    return [int(k.generate_state(1, dtype=np.uint64)[0]) for k in kids]


class GaussianSource:
    """Base class. Subclasses implement draw()."""

    # True when the block for a sample index does not depend on the worker
    index_addressable = False

    def __init__(self, n_steps: int, n_sequences: int):
        self.n_steps = int(n_steps)
        self.n_sequences = int(n_sequences)
        if self.n_steps < 1 or self.n_sequences < 1:
            raise ValueError("n_steps and n_sequences must be >= 1")

    def draw(self, worker: int, start: int, count: int, out: Optional[np.ndarray] = None) -> np.ndarray:
        raise NotImplementedError

    def _out(self, count, out):
        shape = (int(count), self.n_sequences, self.n_steps)
        if out is None:
            return np.empty(shape, dtype=float)
        if out.shape != shape:
            raise ValueError(f"out has shape {out.shape}, expected {shape}")
        return out


class PseudoRandomSource(GaussianSource):
    """
    Independent pseudo-random streams, one per worker.

    For a fixed seed and worker count every worker sees the same sequence of
    normals on every run. Workers never share a generator, so no locking.
    Streams, and therefore results, change with the worker count.
    """

    def __init__(self, seed, n_workers: int, n_steps: int, n_sequences: int):
        super().__init__(n_steps, n_sequences)
        self.n_workers = int(n_workers)
        if self.n_workers < 1:
            raise ValueError("n_workers must be >= 1")
        self.seeds = child_seeds(seed, self.n_workers)
        self._gens = [np.random.default_rng(s) for s in self.seeds]

    def draw(self, worker, start, count, out=None):
        out = self._out(count, out)
        self._gens[worker].standard_normal(out=out)
        return out


class SobolSource(GaussianSource):
    """
    Low-discrepancy normals from an unscrambled Sobol sequence.

    Sample m uses point m+1: point 0 is the origin and its normal quantile is
    -inf. Coordinate j of a point belongs to sequence j mod n_sequences. The
    scipy engine keeps a cursor and is not safe for concurrent use, so every
    draw holds the lock; everything else a worker does runs unlocked.
    """

    index_addressable = True

    def __init__(self, n_steps: int, n_sequences: int):
        super().__init__(n_steps, n_sequences)
        self.dim = self.n_steps * self.n_sequences
        if self.dim > SOBOL_MAX_DIM:
            raise ValueError(f"Sobol dimension {self.dim} exceeds {SOBOL_MAX_DIM}")
        self._engine = qmc.Sobol(d=self.dim, scramble=False)
        self._lock = threading.Lock()

    def _seek(self, point: int):
        pos = self._engine.num_generated
        if point == pos:
            return
        logger.debug("sobol seek %d -> %d", pos, point)
        if point < pos:
            self._engine.reset()
            pos = 0
        if point > pos:
            self._engine.fast_forward(point - pos)

    def points(self, start: int, count: int) -> np.ndarray:
        """Raw uniform points for samples start .. start+count-1."""
        with self._lock:
            self._seek(int(start) + 1)
            with warnings.catch_warnings():
                # balance-property warning for non power-of-two draws
                warnings.simplefilter("ignore", UserWarning)
                return self._engine.random(int(count))

    def draw(self, worker, start, count, out=None):
        out = self._out(count, out)
        u = self.points(start, count)
        z = norm.ppf(u).reshape(int(count), self.n_steps, self.n_sequences)
        out[...] = np.swapaxes(z, 1, 2)
        return out


class PresetSource(GaussianSource):
    """Replays gaussians[m] for sample m; gaussians has shape (M, n_sequences, N)."""

    index_addressable = True

    def __init__(self, gaussians):
        g = np.asarray(gaussians, dtype=float)
        if g.ndim != 3:
            raise ValueError("gaussians must have shape (M, n_sequences, N)")
        super().__init__(g.shape[2], g.shape[1])
        self.n_samples = int(g.shape[0])
        self._g = g

    def draw(self, worker, start, count, out=None):
        start = int(start); count = int(count)
        if start < 0 or start + count > self.n_samples:
            raise IndexError(f"samples {start}..{start + count - 1} outside preset of {self.n_samples}")
        out = self._out(count, out)
        out[...] = self._g[start:start + count]
        return out


def make_source(
    kind: str,
    n_steps: int,
    n_sequences: int,
    n_workers: int = 1,
    seed: Union[int, Sequence[int]] = 12345,
) -> GaussianSource:
    kind = str(kind).lower()
    if kind in ("pseudo", "mt", "prng"):
        return PseudoRandomSource(seed, n_workers, n_steps, n_sequences)
    if kind in ("sobol", "qmc"):
        return SobolSource(n_steps, n_sequences)
    raise ValueError("entropy must be 'pseudo' or 'sobol'")
