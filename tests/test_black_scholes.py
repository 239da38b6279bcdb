import numpy as np
import pytest

from rbergomi.black_scholes import bs_call_forward, bs_call_total_vol, implied_vol_call
from rbergomi.errors import NumericNonConvergence
from rbergomi.results import implied_vols

# -----------------------------
# 1) Forward call and total-vol call
# -----------------------------

def test_forward_call_ranges():
    c = bs_call_forward(1.0, 1.0, 1.0, 0.2)
    # ATM approx 0.4 * sigma * sqrt(T)
    assert np.isclose(c, 0.0797, atol=2e-4)
    assert bs_call_forward(1.0, 0.8, 0.0, 0.2) == pytest.approx(0.2)
    assert bs_call_forward(1.0, 1.2, 1.0, 0.0) == 0.0


def test_total_vol_matches_forward_call():
    T, sig = 0.75, 0.3
    K = np.array([0.7, 0.9, 1.0, 1.1, 1.5])
    got = np.array([bs_call_total_vol(1.0, k, sig * np.sqrt(T)) for k in K])
    ref = np.array([bs_call_forward(1.0, k, T, sig) for k in K])
    assert np.allclose(got, ref, rtol=1e-12, atol=1e-14)


def test_total_vol_vectorized_and_zero_vol():
    S = np.array([0.8, 1.0, 1.2, 1.0])
    s = np.array([0.2, 0.0, 0.0, 0.1])
    p = bs_call_total_vol(S, 1.0, s)
    assert p.shape == S.shape
    assert p[1] == 0.0
    assert p[2] == pytest.approx(0.2)
    assert np.all(p >= np.maximum(S - 1.0, 0.0))
    assert np.all(np.isfinite(p))


# -----------------------------
# 2) Implied vol round-trip
# -----------------------------

@pytest.mark.parametrize("K,T", [
    (0.9, 0.05), (1.0, 0.05), (1.1, 0.05), (1.4, 0.05),
    (0.6, 1.0), (0.9, 1.0), (1.0, 1.0), (1.1, 1.0), (1.4, 1.0),
    (0.6, 2.0), (0.9, 2.0), (1.0, 2.0), (1.1, 2.0), (1.4, 2.0),
])
def test_implied_vol_roundtrip(K, T):
    sigma_true = 0.23
    price = bs_call_forward(1.0, K, T, sigma_true)
    iv = implied_vol_call(price, K, T)
    assert np.isclose(iv, sigma_true, rtol=1e-7, atol=1e-9)


# -----------------------------
# 3) Failures
# -----------------------------

@pytest.mark.parametrize("price,K", [
    (0.0, 1.0),       # at intrinsic for ATM
    (0.1, 0.8),       # below intrinsic 0.2
    (1.0, 1.0),       # at the forward
    (np.nan, 1.0),
])
def test_implied_vol_outside_band(price, K):
    with pytest.raises(NumericNonConvergence):
        implied_vol_call(price, K, 1.0)


def test_implied_vol_no_bracket():
    # needs a vol above the upper bound
    price = bs_call_forward(1.0, 1.0, 1.0, 3.0)
    with pytest.raises(NumericNonConvergence):
        implied_vol_call(price, 1.0, 1.0, vol_bounds=(1e-6, 1.0))


def test_nonconvergence_is_arithmetic_error():
    with pytest.raises(ArithmeticError):
        implied_vol_call(-1.0, 1.0, 1.0)


def test_time_value_below_precision_is_rejected():
    # deep ITM, short expiry: time value ~1e-23 rounds away, price == intrinsic
    price = bs_call_forward(1.0, 0.6, 0.05, 0.23)
    assert price == pytest.approx(0.4, abs=1e-15)
    with pytest.raises(NumericNonConvergence):
        implied_vol_call(price, 0.6, 0.05)

    iv, failed = implied_vols(np.array([price, bs_call_forward(1.0, 1.0, 0.05, 0.23)]),
                              np.array([0.6, 1.0]), np.array([0.05, 0.05]))
    assert np.isnan(iv[0]) and failed[0]
    assert iv[1] == pytest.approx(0.23, rel=1e-7) and not failed[1]
