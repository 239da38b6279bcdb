# rbergomi/evaluator.py
"""
Path and payoff evaluation with incremental recomputation.

Model (rBergomi, S0 = 1, zero rates):
    dS_t / S_t = sqrt(v_t) dW_t^S,     Corr(W^S, W1) = rho
    v_t = xi * exp( eta * X_t - 0.5 * eta^2 * t^{2H} )
    X_t = sqrt(2H) * int_0^t (t - s)^{H - 1/2} dW1_s

X is built on the grid t_k = k T / N with the hybrid scheme: the first cell
below t_k is integrated exactly (W1hat, correlated with W1 through rhoH), the
remaining cells are a discrete convolution of W1 with the power-law kernel.
The Volterra process is computed on the unit interval and rescaled by T^H,
which is exact by self-similarity.

A PathEvaluator sweeps the parameter grid for a block of samples. The work at
grid index i follows the cascade H -> T -> eta -> rho: a change at any level
forces all levels below it.

    dirty H     rebuild X by FFT convolution (the expensive step)
    dirty T     rescale X by T^H, set dt = T/N
    dirty eta   rebuild the unit variance path (xi = 1)
    dirty rho   rebuild the correlated spot driver (full-path payoff only)
    always      v = xi * unit path, int v dt, int sqrt(v) dW1, payoff

Payoff modes:
    CONDITIONAL  Black call conditional on the variance path (lower variance)
    FULL         (S_T - K)+ from the simulated log-price
"""

from __future__ import annotations
import enum
import math
from collections import namedtuple
from typing import Optional

import numpy as np

from rbergomi.black_scholes import bs_call_total_vol
from rbergomi.convolution import Convolver


class PayoffMode(enum.Enum):
    CONDITIONAL = "conditional"
    FULL = "full"

    @classmethod
    def parse(cls, value) -> "PayoffMode":
        if isinstance(value, cls):
            return value
        s = str(value).lower()
        if s in ("conditional", "rt", "romano-touzi", "cond"):
            return cls.CONDITIONAL
        if s in ("full", "full-path", "terminal"):
            return cls.FULL
        raise ValueError("payoff must be 'conditional' or 'full'")


def n_sequences_for(payoff) -> int:
    """Gaussian sequences per sample: W1, W1perp and, for FULL, Wperp."""
    return 3 if PayoffMode.parse(payoff) is PayoffMode.FULL else 2


DirtyFlags = namedtuple("DirtyFlags", ["h", "t", "eta", "rho"])

ALL_DIRTY = DirtyFlags(True, True, True, True)


def dirty_flags(grid, i: int, fresh: bool = False) -> DirtyFlags:
    """
    Ordered OR-chain of the grid triggers at index i. `fresh` means new
    Gaussians were loaded, which invalidates everything.
    """
    h = fresh or grid.h_changed(i)
    t = h or grid.t_changed(i)
    eta = t or grid.eta_changed(i)
    rho = eta or grid.rho_changed(i)
    return DirtyFlags(h, t, eta, rho)


class PathState:
    """
    Per-worker buffers for a block of up to batch_size samples, overwritten in
    place from one block (and one grid index) to the next.
    """

    def __init__(self, N: int, batch_size: int, n_sequences: int):
        self.N = int(N)
        self.batch_size = int(batch_size)
        self.n_sequences = int(n_sequences)
        B, N = self.batch_size, self.N
        self.gauss = np.zeros((B, self.n_sequences, N))
        self.conv = np.zeros((B, N))
        self.volterra = np.zeros((B, N))      # X on the unit interval
        self.scaled = np.zeros((B, N))        # T^H * X; entry k is X at t_{k+1}
        self.unit_var = np.zeros((B, N))      # v / xi on t_0 .. t_{N-1}
        self.var = np.zeros((B, N))
        self.spot_driver = np.zeros((B, N)) if self.n_sequences >= 3 else None
        self.t2H = np.zeros(N)                # t_k^{2H}
        self.rows = 0
        self.dt = math.nan
        self.sdt = math.nan

    @property
    def W1(self) -> np.ndarray:
        return self.gauss[:self.rows, 0]

    @property
    def W1perp(self) -> np.ndarray:
        return self.gauss[:self.rows, 1]

    @property
    def Wperp(self) -> np.ndarray:
        return self.gauss[:self.rows, 2]


class PathEvaluator:
    """
    Evaluates one payoff per loaded sample at a grid index.

    Holds a PathState and a Convolver that belong to a single worker. The grid
    and kernel cache are only read.
    """

    def __init__(self, grid, kernels, convolver: Convolver, payoff=PayoffMode.CONDITIONAL,
                 state: Optional[PathState] = None):
        self.grid = grid
        self.kernels = kernels
        self.conv = convolver
        self.payoff = PayoffMode.parse(payoff)
        N = convolver.N
        if kernels.N != N:
            raise ValueError(f"kernel length {kernels.N} does not match N={N}")
        if state is None:
            state = PathState(N, convolver.ws.batch_size, n_sequences_for(self.payoff))
        if state.n_sequences < n_sequences_for(self.payoff):
            raise ValueError(f"{self.payoff.value} payoff needs {n_sequences_for(self.payoff)} Gaussian sequences")
        self.state = state
        self._fresh = True
        self.counts = dict(volterra=0, rescale=0, variance=0, spot=0)

    # --- loading ---

    def load(self, gaussians: np.ndarray) -> None:
        """Install a block of shape (rows, n_sequences, N)."""
        st = self.state
        g = np.asarray(gaussians, dtype=float)
        rows = g.shape[0]
        if g.shape[1:] != st.gauss.shape[1:]:
            raise ValueError(f"gaussians must have shape (rows, {st.n_sequences}, {st.N})")
        if rows > st.batch_size:
            raise ValueError(f"block of {rows} samples exceeds batch_size {st.batch_size}")
        if not np.may_share_memory(g, st.gauss):
            st.gauss[:rows] = g
        st.rows = rows
        self._fresh = True

    # --- cascade steps ---

    def _update_volterra(self, H: float) -> None:
        st = self.state
        r, N = st.rows, st.N
        W1, W1p = st.W1, st.W1perp
        y = self.conv.run(W1, self.kernels[H], out=st.conv[:r])
        s2H = math.sqrt(2.0 * H)
        rhoH = s2H / (H + 0.5)
        a = rhoH / s2H
        b = math.sqrt(max(1.0 - rhoH * rhoH, 0.0)) / s2H
        X = st.volterra[:r]
        np.multiply(W1, a, out=X)
        X += b * W1p
        X += y
        X *= s2H * N ** (-H)
        self.counts["volterra"] += 1

    def _rescale(self, H: float, T: float) -> None:
        st = self.state
        r, N = st.rows, st.N
        np.multiply(st.volterra[:r], T ** H, out=st.scaled[:r])
        st.dt = T / N
        st.sdt = math.sqrt(st.dt)
        st.t2H[:] = np.power(np.arange(N, dtype=float) * st.dt, 2.0 * H)
        self.counts["rescale"] += 1

    def _update_variance(self, eta: float) -> None:
        st = self.state
        r = st.rows
        u = st.unit_var[:r]
        u[:, 0] = 1.0
        if st.N > 1:
            np.multiply(st.scaled[:r, :-1], eta, out=u[:, 1:])
            u[:, 1:] -= 0.5 * eta * eta * st.t2H[1:]
            np.exp(u[:, 1:], out=u[:, 1:])
        self.counts["variance"] += 1

    def _update_spot_driver(self, rho: float) -> None:
        st = self.state
        r = st.rows
        Z = st.spot_driver[:r]
        np.multiply(st.W1, rho, out=Z)
        Z += math.sqrt(max(1.0 - rho * rho, 0.0)) * st.Wperp
        Z *= st.sdt
        self.counts["spot"] += 1

    def integrals(self):
        """(int v dt, int sqrt(v) dW1) per sample, left-point sums."""
        st = self.state
        r = st.rows
        v = st.var[:r]
        i_vdt = st.dt * v.sum(axis=1)
        i_sqrtv_dw = st.sdt * np.einsum("ij,ij->i", np.sqrt(v), st.W1)
        return i_vdt, i_sqrtv_dw

    # --- main entry ---

    def evaluate(self, i: int, force: bool = False) -> np.ndarray:
        """Payoff per loaded sample for grid index i."""
        st = self.state
        if st.rows == 0:
            raise RuntimeError("no Gaussians loaded")
        g = self.grid
        flags = ALL_DIRTY if force else dirty_flags(g, i, fresh=self._fresh)
        self._fresh = False

        H = g.H(i)
        if flags.h:
            self._update_volterra(H)
        if flags.t:
            self._rescale(H, g.T(i))
        if flags.eta:
            self._update_variance(g.eta(i))

        r = st.rows
        np.multiply(st.unit_var[:r], g.xi(i), out=st.var[:r])
        i_vdt, i_sqrtv_dw = self.integrals()

        rho = g.rho(i)
        K = g.K(i)
        if self.payoff is PayoffMode.CONDITIONAL:
            spot = np.exp(rho * i_sqrtv_dw - 0.5 * rho * rho * i_vdt)
            total_vol = np.sqrt((1.0 - rho * rho) * i_vdt)
            return bs_call_total_vol(spot, K, total_vol)

        if flags.rho:
            self._update_spot_driver(rho)
        log_s = np.einsum("ij,ij->i", np.sqrt(st.var[:r]), st.spot_driver[:r]) - 0.5 * i_vdt
        return np.maximum(np.exp(log_s) - K, 0.0)

    def sweep(self, gaussians: np.ndarray, force: bool = False) -> np.ndarray:
        """Load a block and evaluate the whole grid: returns (rows, grid size)."""
        self.load(gaussians)
        out = np.empty((self.state.rows, self.grid.size()))
        for i in range(self.grid.size()):
            out[:, i] = self.evaluate(i, force=force)
        return out
