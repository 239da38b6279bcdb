# rbergomi/kernel.py
"""
Power-law kernel of the rBergomi Volterra process.

With alpha = H - 0.5 the kernel weight at lag k is the integral of x^alpha over
[k, k+1]:

    kernel[0] = 0
    kernel[k] = ((k+1)^(alpha+1) - k^(alpha+1)) / (alpha+1),   k >= 1

Lag 0 is zero because the first cell is handled exactly by the hybrid term in
the evaluator. The exact power formula is used, so there is no cancellation
for H close to 0 where alpha approaches -0.5.
"""

from __future__ import annotations
from collections.abc import Mapping
from typing import Iterable

import numpy as np


def kernel_vector(H: float, N: int) -> np.ndarray:
    H = float(H); N = int(N)
    if not (0.0 < H < 1.0):
        raise ValueError("H must be in (0,1)")
    if N < 1:
        raise ValueError("N must be >= 1")
    a1 = H + 0.5  # alpha + 1
    k = np.arange(N, dtype=float)
    g = np.empty(N, dtype=float)
    g[0] = 0.0
    g[1:] = (np.power(k[1:] + 1.0, a1) - np.power(k[1:], a1)) / a1
    return g


class KernelCache(Mapping):
    """
    Read-only mapping H -> kernel vector of length N, built once per run.

    Keys are the H values exactly as supplied. Repeated H values in a grid are
    copies of the same float, so they compare equal bit for bit and share one
    entry. Keys iterate in increasing order.
    """

    def __init__(self, h_values: Iterable[float], N: int):
        self.N = int(N)
        self._kernels = {}
        for h in sorted(set(float(x) for x in h_values)):
            g = kernel_vector(h, self.N)
            g.setflags(write=False)
            self._kernels[h] = g

    def __getitem__(self, H: float) -> np.ndarray:
        try:
            return self._kernels[float(H)]
        except KeyError:
            raise KeyError(f"no kernel cached for H={H!r}") from None

    def __iter__(self):
        return iter(self._kernels)

    def __len__(self) -> int:
        return len(self._kernels)

    def __repr__(self) -> str:
        return f"KernelCache(N={self.N}, H={list(self._kernels)})"
