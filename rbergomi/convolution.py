# rbergomi/convolution.py
"""
FFT convolution of the Gaussian driver with the power-law kernel.

For a driver x and kernel g of length N the Volterra construction needs the
first N entries of the linear convolution

    y[k] = sum_{j=0..k} x[j] * g[k-j],    k = 0..N-1

Both inputs are zero padded to n_fft >= 2N-1, transformed, multiplied as
complex numbers, transformed back with an unnormalised inverse, and the real
part is rescaled by 1/n_fft.

A SpectralWorkspace owns the padded complex buffers (driver, kernel, product
in time and frequency domain) and three plans bound to them. It is allocated
once per worker and reused for every sample and grid index, so it must never
be shared between threads.
"""

from __future__ import annotations
from typing import Optional

import numpy as np
import scipy.fft as sp_fft


# ------------------------ FFT backends ------------------------

class FFTBackend:
    """Unnormalised complex transforms along the last axis."""

    name = "base"

    def forward(self, src: np.ndarray, dst: np.ndarray) -> None:
        raise NotImplementedError

    def inverse(self, src: np.ndarray, dst: np.ndarray) -> None:
        raise NotImplementedError

    def fast_len(self, n: int) -> int:
        return int(n)


class NumpyFFTBackend(FFTBackend):
    name = "numpy"

    def forward(self, src, dst):
        np.fft.fft(src, axis=-1, out=dst)

    def inverse(self, src, dst):
        # norm="forward" leaves the inverse unscaled
        np.fft.ifft(src, axis=-1, norm="forward", out=dst)


class ScipyFFTBackend(FFTBackend):
    name = "scipy"

    def __init__(self, workers: int = 1):
        self.workers = int(workers)

    def forward(self, src, dst):
        dst[...] = sp_fft.fft(src, axis=-1, workers=self.workers)

    def inverse(self, src, dst):
        dst[...] = sp_fft.ifft(src, axis=-1, norm="forward", workers=self.workers)

    def fast_len(self, n):
        return int(sp_fft.next_fast_len(int(n)))


FFT_BACKENDS = {
    "numpy": NumpyFFTBackend,
    "scipy": ScipyFFTBackend,
}


def get_backend(backend) -> FFTBackend:
    if isinstance(backend, FFTBackend):
        return backend
    try:
        return FFT_BACKENDS[str(backend).lower()]()
    except KeyError:
        raise ValueError(f"unknown FFT backend {backend!r}; choose from {sorted(FFT_BACKENDS)}") from None


# ------------------------ workspace and plans ------------------------

class TransformPlan:
    """A transform bound to fixed source and destination buffers."""

    def __init__(self, backend: FFTBackend, direction: str, src: np.ndarray, dst: np.ndarray):
        if direction not in ("forward", "inverse"):
            raise ValueError("direction must be 'forward' or 'inverse'")
        self.backend = backend
        self.direction = direction
        self.src = src
        self.dst = dst
        self._run = backend.forward if direction == "forward" else backend.inverse

    def execute(self, rows: Optional[int] = None) -> None:
        if rows is None or self.src.ndim == 1:
            self._run(self.src, self.dst)
        else:
            self._run(self.src[:rows], self.dst[:rows])


class SpectralWorkspace:
    """
    Per-worker FFT buffers of length n_fft and their plans.

    The driver and product buffers hold up to batch_size rows; the kernel
    buffers are one-dimensional and broadcast against them.
    """

    def __init__(self, N: int, batch_size: int = 1, backend="numpy", n_fft: Optional[int] = None):
        self.N = int(N)
        self.batch_size = int(batch_size)
        if self.N < 1 or self.batch_size < 1:
            raise ValueError("N and batch_size must be >= 1")
        self.backend = get_backend(backend)
        min_len = 2 * self.N - 1
        self.n_fft = self.backend.fast_len(min_len) if n_fft is None else int(n_fft)
        if self.n_fft < min_len:
            raise ValueError(f"n_fft must be >= 2N-1 = {min_len}")

        shape = (self.batch_size, self.n_fft)
        self.driver_time = np.zeros(shape, dtype=np.complex128)
        self.driver_freq = np.zeros(shape, dtype=np.complex128)
        self.kernel_time = np.zeros(self.n_fft, dtype=np.complex128)
        self.kernel_freq = np.zeros(self.n_fft, dtype=np.complex128)
        self.product_freq = np.zeros(shape, dtype=np.complex128)
        self.product_time = np.zeros(shape, dtype=np.complex128)

        self.driver_plan = TransformPlan(self.backend, "forward", self.driver_time, self.driver_freq)
        self.kernel_plan = TransformPlan(self.backend, "forward", self.kernel_time, self.kernel_freq)
        self.product_plan = TransformPlan(self.backend, "inverse", self.product_freq, self.product_time)

    def nbytes(self) -> int:
        bufs = (self.driver_time, self.driver_freq, self.kernel_time,
                self.kernel_freq, self.product_freq, self.product_time)
        return int(sum(b.nbytes for b in bufs))


class Convolver:
    """
    Convolution engine on top of one SpectralWorkspace. Stateful: the kernel
    spectrum of the last kernel is kept and reused while the same array
    object is passed in again.
    """

    def __init__(self, workspace: SpectralWorkspace):
        self.ws = workspace
        self._kernel = None

    @property
    def N(self) -> int:
        return self.ws.N

    def set_kernel(self, kernel: np.ndarray) -> None:
        if kernel is self._kernel:
            return
        ws = self.ws
        g = np.asarray(kernel, dtype=float)
        if g.shape != (ws.N,):
            raise ValueError(f"kernel must have shape ({ws.N},)")
        ws.kernel_time[:] = 0.0
        ws.kernel_time[:ws.N] = g
        ws.kernel_plan.execute()
        self._kernel = kernel

    def run(self, driver: np.ndarray, kernel: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Convolve each row of driver (rows, N) or a single (N,) vector with kernel."""
        ws = self.ws
        x = np.asarray(driver, dtype=float)
        single = x.ndim == 1
        x2 = x[None, :] if single else x
        rows = x2.shape[0]
        if x2.shape[1] != ws.N:
            raise ValueError(f"driver must have {ws.N} columns")
        if rows > ws.batch_size:
            raise ValueError(f"driver has {rows} rows, workspace holds {ws.batch_size}")

        self.set_kernel(kernel)

        ws.driver_time[:rows, :ws.N] = x2
        ws.driver_time[:rows, ws.N:] = 0.0
        ws.driver_plan.execute(rows)
        np.multiply(ws.driver_freq[:rows], ws.kernel_freq[None, :], out=ws.product_freq[:rows])
        ws.product_plan.execute(rows)

        if out is None:
            out = np.empty_like(x2)
        res = out[None, :] if out.ndim == 1 else out
        np.multiply(ws.product_time[:rows, :ws.N].real, 1.0 / ws.n_fft, out=res)
        return out[0] if (single and out.ndim == 2) else out


# ------------------------ one-shot helpers ------------------------

def fft_convolve(driver, kernel, backend="numpy") -> np.ndarray:
    x = np.asarray(driver, dtype=float)
    rows = 1 if x.ndim == 1 else x.shape[0]
    ws = SpectralWorkspace(x.shape[-1], batch_size=rows, backend=backend)
    return Convolver(ws).run(x, kernel)


def direct_convolution(driver, kernel) -> np.ndarray:
    """Time-domain reference, O(N^2): first N entries of the linear convolution."""
    x = np.asarray(driver, dtype=float)
    g = np.asarray(kernel, dtype=float)
    N = x.shape[-1]
    if x.ndim == 1:
        return np.convolve(x, g)[:N]
    return np.stack([np.convolve(row, g)[:N] for row in x])
