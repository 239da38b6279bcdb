# rbergomi/grid.py
"""
Parameter grids for batch pricing.

A grid is a list of co-indexed tuples (H, eta, rho, T, K, xi), not a Cartesian
product. For each index it exposes the parameter values and four change
triggers (H, T, eta, rho) that let the path evaluator skip work when a value
is unchanged from the previous index. xi and K have no triggers: they only
enter the payoff.

Two variants:
    ParameterGrid          keeps the order given by the caller
    OrderedParameterGrid   sorts by H, then T, eta, rho to lengthen the runs of
                           unchanged values, and can restore the input order
"""

from __future__ import annotations

import numpy as np

from rbergomi.errors import EmptyParameterError, ParameterSizeError


PARAMETER_NAMES = ("H", "eta", "rho", "T", "K", "xi")


def _frozen(x) -> np.ndarray:
    a = np.array(x, dtype=float).reshape(-1)
    a.setflags(write=False)
    return a


def _changed(x: np.ndarray) -> np.ndarray:
    flags = np.ones(x.size, dtype=bool)
    flags[1:] = x[1:] != x[:-1]
    flags.setflags(write=False)
    return flags


class ParameterGrid:
    """Co-indexed parameter tuples in the order given."""

    ordered = False

    def __init__(self, H, eta, rho, T, K, xi):
        arrays = [np.asarray(a, dtype=float).reshape(-1) for a in (H, eta, rho, T, K, xi)]
        sizes = [a.size for a in arrays]
        if min(sizes) == 0:
            empty = [n for n, s in zip(PARAMETER_NAMES, sizes) if s == 0]
            raise EmptyParameterError(f"parameter arrays have size 0: {', '.join(empty)}")
        if len(set(sizes)) != 1:
            detail = ", ".join(f"{n}={s}" for n, s in zip(PARAMETER_NAMES, sizes))
            raise ParameterSizeError(f"parameter arrays are not equal in size ({detail})")

        perm = self._permutation(arrays)
        self._order = np.asarray(perm, dtype=np.intp)
        self._order.setflags(write=False)
        self._H, self._eta, self._rho, self._T, self._K, self._xi = (_frozen(a[perm]) for a in arrays)

        if np.any((self._H <= 0.0) | (self._H >= 1.0)):
            raise ValueError("H must be in (0,1)")
        if np.any(np.abs(self._rho) > 1.0):
            raise ValueError("rho must be in [-1,1]")
        if np.any(self._T <= 0.0):
            raise ValueError("T must be positive")
        if np.any(self._K <= 0.0):
            raise ValueError("K must be positive")
        if np.any(self._xi < 0.0):
            raise ValueError("xi must be non-negative")

        self._h_trig = _changed(self._H)
        self._t_trig = _changed(self._T)
        self._eta_trig = _changed(self._eta)
        self._rho_trig = _changed(self._rho)

    def _permutation(self, arrays) -> np.ndarray:
        return np.arange(arrays[0].size)

    # --- size and values ---

    def size(self) -> int:
        return int(self._H.size)

    def __len__(self) -> int:
        return self.size()

    def H(self, i: int) -> float:
        return float(self._H[i])

    def eta(self, i: int) -> float:
        return float(self._eta[i])

    def rho(self, i: int) -> float:
        return float(self._rho[i])

    def T(self, i: int) -> float:
        return float(self._T[i])

    def K(self, i: int) -> float:
        return float(self._K[i])

    def xi(self, i: int) -> float:
        return float(self._xi[i])

    # --- triggers; index 0 always counts as changed ---

    def h_changed(self, i: int) -> bool:
        return bool(self._h_trig[i])

    def t_changed(self, i: int) -> bool:
        return bool(self._t_trig[i])

    def eta_changed(self, i: int) -> bool:
        return bool(self._eta_trig[i])

    def rho_changed(self, i: int) -> bool:
        return bool(self._rho_trig[i])

    # --- bulk access ---

    def arrays(self) -> dict:
        """Parameter arrays in grid (evaluation) order."""
        return dict(H=self._H, eta=self._eta, rho=self._rho, T=self._T, K=self._K, xi=self._xi)

    def unique_h(self) -> np.ndarray:
        return np.unique(self._H)

    def restore(self, values) -> np.ndarray:
        """Map values indexed in grid order back to input order."""
        v = np.asarray(values)
        if v.shape[0] != self.size():
            raise ValueError("values must have one entry per grid index")
        out = np.empty_like(v)
        out[self._order] = v
        return out

    def input_arrays(self) -> dict:
        """Parameter arrays in the caller's original order."""
        return {k: self.restore(v) for k, v in self.arrays().items()}

    def recompute_count(self) -> int:
        """Number of indices at which the Volterra process is rebuilt."""
        return int(np.count_nonzero(self._h_trig))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(size={self.size()}, distinct_H={self.unique_h().size})"


class OrderedParameterGrid(ParameterGrid):
    """
    Grid sorted once at construction: H non-decreasing, then T, eta and rho
    within ties. The sort is stable, so equal tuples keep their input order.
    """

    ordered = True

    def _permutation(self, arrays) -> np.ndarray:
        H, eta, rho, T = arrays[0], arrays[1], arrays[2], arrays[3]
        # lexsort: last key is the primary one
        return np.lexsort((rho, eta, T, H))


def make_grid(H, eta, rho, T, K, xi, ordered: bool = True) -> ParameterGrid:
    cls = OrderedParameterGrid if ordered else ParameterGrid
    return cls(H, eta, rho, T, K, xi)

