# rbergomi/results.py
"""
Turn accumulated payoff sums into prices, standard errors and implied vols.

    price[i]  = sum[i] / M
    second[i] = sumsq[i] / M
    var[i]    = second[i] - price[i]^2      (clipped at 0 against rounding)
    stat[i]   = sqrt(var[i] / M)

Implied vols come from the forward Black formula with F = 1. A grid index
whose inversion fails gets iv = NaN and iv_failed = True; the run goes on.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from rbergomi.black_scholes import implied_vol_call
from rbergomi.errors import NumericNonConvergence


logger = logging.getLogger(__name__)

TABLE_COLUMNS = ["xi", "H", "eta", "rho", "T", "K", "price", "iv", "stat"]


@dataclass
class Accumulated:
    """
    Global payoff sums per grid index (grid order) over n_samples samples.
    `workers` is the pool size actually used; `worker_invariant` is True when
    the sums do not depend on it (index-addressable entropy source).
    """
    sums: np.ndarray
    sumsq: np.ndarray
    n_samples: int
    workers: int = 1
    worker_invariant: bool = False


@dataclass
class PricingResult:
    """One row per grid index, in the caller's input order."""
    H: np.ndarray
    eta: np.ndarray
    rho: np.ndarray
    T: np.ndarray
    K: np.ndarray
    xi: np.ndarray
    price: np.ndarray
    iv: np.ndarray
    stat: np.ndarray
    iv_failed: np.ndarray
    n_steps: int = 0
    n_samples: int = 0
    workers: int = 1
    elapsed: float = 0.0
    meta: dict = field(default_factory=dict)

    def __len__(self) -> int:
        return int(self.price.size)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({c: getattr(self, c) for c in TABLE_COLUMNS})


def moments(acc: Accumulated):
    """(price, variance, stat) arrays from accumulated sums."""
    M = float(acc.n_samples)
    if M < 1:
        raise ValueError("n_samples must be >= 1")
    price = np.asarray(acc.sums, dtype=float) / M
    second = np.asarray(acc.sumsq, dtype=float) / M
    var = np.maximum(second - price * price, 0.0)
    stat = np.sqrt(var / M)
    return price, var, stat


def implied_vols(price, K, T, tol=1e-10, maxiter=200):
    """Per-index implied vols; failures become NaN and are flagged."""
    price = np.asarray(price, dtype=float)
    iv = np.full(price.shape, np.nan)
    failed = np.zeros(price.shape, dtype=bool)
    for i in range(price.size):
        try:
            iv[i] = implied_vol_call(price[i], K[i], T[i], tol=tol, maxiter=maxiter)
        except NumericNonConvergence as exc:
            failed[i] = True
            logger.warning("implied vol failed at index %d (K=%g, T=%g): %s", i, K[i], T[i], exc)
    return iv, failed


def aggregate(grid, acc: Accumulated, n_steps: int = 0, workers: int = 1, elapsed: float = 0.0,
              iv_tol: float = 1e-10, iv_maxiter: int = 200, meta: Optional[dict] = None) -> PricingResult:
    """Build the result in input order from sums accumulated in grid order."""
    if np.shape(acc.sums) != (grid.size(),):
        raise ValueError("accumulated sums do not match the grid size")
    price, _var, stat = moments(acc)
    arrs = grid.arrays()
    iv, failed = implied_vols(price, arrs["K"], arrs["T"], tol=iv_tol, maxiter=iv_maxiter)
    params = grid.input_arrays()
    return PricingResult(
        price=grid.restore(price),
        iv=grid.restore(iv),
        stat=grid.restore(stat),
        iv_failed=grid.restore(failed),
        n_steps=int(n_steps),
        n_samples=int(acc.n_samples),
        workers=int(workers),
        elapsed=float(elapsed),
        meta=dict(meta or {}),
        **params,
    )
