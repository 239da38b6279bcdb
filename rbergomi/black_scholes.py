import math

import numpy as np
from scipy.optimize import brentq
from scipy.stats import norm

from rbergomi.errors import NumericNonConvergence

# --------------------------------------------------------------------------------------
# Forward-measure Black call (zero rate, spot normalised to the forward)
# --------------------------------------------------------------------------------------

def bs_call_forward(F, K, T, iv):
    """Forward-measure Black–Scholes call (undiscounted)."""
    if T <= 0:
        return max(F - K, 0.0)
    if iv <= 0 or K <= 0 or F <= 0:
        return max(F - K, 0.0)
    sqrtT = math.sqrt(T)
    d1 = (math.log(F / K) + 0.5 * iv * iv * T) / (iv * sqrtT)
    d2 = d1 - iv * sqrtT
    return float(F * norm.cdf(d1) - K * norm.cdf(d2))


def bs_call_total_vol(spot, K, total_vol):
    """
    Vectorized Black call in terms of total volatility sigma*sqrt(T).

    This is the conditional payoff of the rBergomi pricer: given a variance
    path, the call is a Black call on a shifted spot with total vol
    sqrt((1 - rho^2) * int v dt). Zero total vol gives the intrinsic value.

    Parameters
    ----------
    spot : float or ndarray
        Spot (forward) level, > 0.
    K : float
        Strike, > 0.
    total_vol : float or ndarray
        sigma * sqrt(T), >= 0.

    Returns
    -------
    ndarray
        Undiscounted call prices, broadcast shape of spot and total_vol.
    """
    S = np.asarray(spot, dtype=float)
    s = np.asarray(total_vol, dtype=float)
    K = float(K)
    intrinsic = np.maximum(S - K, 0.0)
    pos = s > 0.0
    s_safe = np.where(pos, s, 1.0)
    with np.errstate(divide="ignore"):
        d1 = (np.log(S / K) + 0.5 * s_safe * s_safe) / s_safe
    d2 = d1 - s_safe
    price = S * norm.cdf(d1) - K * norm.cdf(d2)
    return np.where(pos, price, intrinsic)


# --------------------------------------------------------------------------------------
# Implied volatility solver
# --------------------------------------------------------------------------------------

def implied_vol_call(price, K, T, F=1.0, tol=1e-10, maxiter=200, vol_bounds=(1e-6, 10.0)):
    """
    Implied volatility of a forward-measure call using Brent's method.

    Raises NumericNonConvergence if the price lies outside the no-arbitrage
    band (F-K)+ < price < F, if the bracket does not contain a root, or if
    Brent does not converge within maxiter iterations.
    """
    price, K, T, F = map(float, (price, K, T, F))
    if not np.isfinite(price):
        raise NumericNonConvergence(f"price is not finite: {price}")
    if T <= 0 or K <= 0 or F <= 0:
        raise NumericNonConvergence("T, K and F must be positive")

    intrinsic = max(F - K, 0.0)
    if price <= intrinsic or price >= F:
        raise NumericNonConvergence(
            f"price {price:.10g} outside no-arbitrage band ({intrinsic:.10g}, {F:.10g})"
        )

    def f(sig):
        return bs_call_forward(F, K, T, sig) - price

    lo, hi = vol_bounds
    flo, fhi = f(lo), f(hi)
    if not (np.isfinite(flo) and np.isfinite(fhi)) or flo * fhi > 0:
        raise NumericNonConvergence(f"no root in [{lo}, {hi}] for price {price:.10g}")

    try:
        iv, info = brentq(f, lo, hi, xtol=tol, rtol=4 * np.finfo(float).eps,
                          maxiter=int(maxiter), full_output=True, disp=False)
    except RuntimeError as exc:
        raise NumericNonConvergence(str(exc)) from exc
    if not info.converged:
        raise NumericNonConvergence(f"brentq: {info.flag} after {info.iterations} iterations")
    return float(iv)
