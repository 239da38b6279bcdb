# rbergomi/config.py
"""
Run configuration for the rBergomi pricer.

PricingConfig bundles the Monte Carlo knobs (N, M, workers, seed, batch size)
and the strategy choices (payoff mode, entropy source, FFT backend, grid
ordering). The worker count defaults to RBERGOMI_NUM_WORKERS if set, else to
the number of CPUs.
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence, Union

from rbergomi.errors import ConfigurationError


WORKERS_ENV = "RBERGOMI_NUM_WORKERS"

PAYOFF_MODES = ("conditional", "full")
ENTROPY_KINDS = ("pseudo", "sobol")
FFT_BACKEND_NAMES = ("numpy", "scipy")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Built-in parameter set used when the CLI is called without arguments.
DEFAULT_PARAMETERS = dict(
    H=[0.05, 0.2],
    eta=[1.0, 3.0],
    rho=[-0.98, -0.8],
    T=[0.05, 2.0],
    K=[1.0, 1.3],
    xi=[0.04, 0.04],
)


def default_workers() -> int:
    raw = os.environ.get(WORKERS_ENV)
    if raw is None or raw.strip() == "":
        return max(1, os.cpu_count() or 1)
    try:
        n = int(raw)
    except ValueError:
        raise ConfigurationError(f"{WORKERS_ENV} must be an integer, got {raw!r}")
    if n < 1:
        raise ConfigurationError(f"{WORKERS_ENV} must be >= 1, got {n}")
    return n


@dataclass
class PricingConfig:
    n_steps: int = 100
    n_samples: int = 100000
    workers: int = field(default_factory=default_workers)
    seed: Union[int, Sequence[int]] = 12345
    batch_size: int = 1024
    payoff: str = "conditional"
    entropy: str = "pseudo"
    fft_backend: str = "numpy"
    ordered: bool = True
    iv_tol: float = 1e-10
    iv_maxiter: int = 200

    def validate(self) -> "PricingConfig":
        if int(self.n_steps) < 1:
            raise ConfigurationError("n_steps must be >= 1")
        if int(self.n_samples) < 1:
            raise ConfigurationError("n_samples must be >= 1")
        if int(self.workers) < 1:
            raise ConfigurationError("workers must be >= 1")
        if int(self.batch_size) < 1:
            raise ConfigurationError("batch_size must be >= 1")
        if str(self.payoff).lower() not in PAYOFF_MODES:
            raise ConfigurationError(f"payoff must be one of {PAYOFF_MODES}")
        if str(self.entropy).lower() not in ENTROPY_KINDS:
            raise ConfigurationError(f"entropy must be one of {ENTROPY_KINDS}")
        if str(self.fft_backend).lower() not in FFT_BACKEND_NAMES:
            raise ConfigurationError(f"fft_backend must be one of {FFT_BACKEND_NAMES}")
        return self

    def with_overrides(self, **kwargs) -> "PricingConfig":
        """Copy with the given fields replaced; None values are ignored."""
        kw = {k: v for k, v in kwargs.items() if v is not None}
        return replace(self, **kw)


def setup_logging(level: Optional[Union[int, str]] = None) -> None:
    """Console logging for scripts. The library itself never adds handlers."""
    if level is None:
        level = logging.INFO
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
