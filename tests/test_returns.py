import math

import numpy as np
import pytest

from core import sample_return, sample_returns


@pytest.mark.parametrize("drift", [-0.02, 0.0, 0.05])
def test_zero_volatility_returns_are_exp_drift(drift):
    draws = sample_returns(10_000, drift, 0.0, np.random.default_rng(3))

    assert np.all(draws == math.exp(drift))
    assert sample_return(drift, 0.0) == math.exp(drift)


def test_mean_gross_return_is_exp_drift():
    draws = sample_returns(200_000, 0.05, 0.15, np.random.default_rng(11))

    assert draws.mean() == pytest.approx(math.exp(0.05), abs=0.003)
    assert np.all(draws > 0)


def test_log_returns_have_requested_volatility():
    draws = sample_returns(200_000, 0.03, 0.2, np.random.default_rng(5))

    assert np.log(draws).std() == pytest.approx(0.2, abs=0.003)


def test_seeded_returns_are_reproducible():
    a = sample_returns(100, 0.05, 0.15, 123)
    b = sample_returns(100, 0.05, 0.15, 123)

    assert np.array_equal(a, b)
    assert sample_return(0.05, 0.15, 9) == sample_return(0.05, 0.15, 9)


def test_single_and_batch_samplers_agree():
    batch = sample_returns(1, 0.05, 0.15, 77)

    assert sample_return(0.05, 0.15, 77) == batch[0]
