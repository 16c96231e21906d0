import math

import numpy as np
import pytest

from core import (
    InvalidParameterError,
    LifeTable,
    PathState,
    SimulationParameters,
    simulate_path,
)


def _make_params(**overrides) -> SimulationParameters:
    values = dict(
        n_sim=1,
        start_age=65,
        retire_age=65,
        max_age=66,
        drift=0.0,
        volatility=0.0,
        salary_0=0.0,
        salary_growth=0.0,
        contrib_rate=0.0,
        withdrawal=10_000.0,
        fee_rate=0.0,
        flat_fee=0.0,
        balance_0=5_000.0,
    )
    values.update(overrides)
    return SimulationParameters(**values)


def _certain_death_table(start_age: int, death_age: int) -> LifeTable:
    """Everyone alive at start_age dies at exactly death_age."""
    ages = list(range(start_age, death_age + 2))
    survivors = [100] * (death_age - start_age + 1) + [0]
    return LifeTable(ages, survivors)


def test_single_withdrawal_exhausts_balance():
    outcome = simulate_path(_make_params(), _certain_death_table(65, 66))

    assert outcome.ruined
    assert outcome.ruin_age == 66
    assert outcome.terminal_balance == 0.0
    assert outcome.death_age == 66
    assert outcome.state is PathState.RUINED


def test_single_withdrawal_leaves_balance():
    outcome = simulate_path(_make_params(balance_0=20_000.0), _certain_death_table(65, 66))

    assert not outcome.ruined
    assert outcome.ruin_age is None
    assert outcome.terminal_balance == pytest.approx(10_000.0)
    assert outcome.state is PathState.DIED


def test_accumulation_then_withdrawal_recursion():
    params = _make_params(
        start_age=30,
        retire_age=32,
        max_age=33,
        salary_0=1_000.0,
        salary_growth=0.1,
        contrib_rate=0.1,
        withdrawal=50.0,
        fee_rate=0.01,
        flat_fee=10.0,
        balance_0=1_000.0,
    )
    outcome = simulate_path(params, _certain_death_table(30, 33))

    # age 31: (1000 - 20 + 100) = 1080, salary grows to 1100
    # age 32: (1080 - 20.8 - 50) = 1009.2
    # age 33: (1009.2 - 20.092 - 50) = 939.108
    assert outcome.terminal_balance == pytest.approx(939.108)
    assert not outcome.ruined


def test_return_applies_after_cash_flows():
    params = _make_params(drift=0.05, withdrawal=1_000.0, flat_fee=100.0, balance_0=10_000.0)
    outcome = simulate_path(params, _certain_death_table(65, 66))

    assert outcome.terminal_balance == pytest.approx((10_000 - 100 - 1_000) * math.exp(0.05))


def test_death_at_start_age_keeps_initial_balance():
    params = _make_params(max_age=70, balance_0=5_000.0)
    outcome = simulate_path(params, _certain_death_table(65, 65))

    assert outcome.death_age == 65
    assert outcome.terminal_balance == 5_000.0
    assert not outcome.ruined


def test_death_stops_withdrawals_without_zeroing_balance():
    params = _make_params(max_age=80, withdrawal=1_000.0, balance_0=10_000.0)
    outcome = simulate_path(params, _certain_death_table(65, 68))

    assert outcome.death_age == 68
    assert outcome.terminal_balance == pytest.approx(7_000.0)
    assert outcome.state is PathState.DIED


def test_ruin_age_is_first_year_balance_runs_out():
    params = _make_params(max_age=90, withdrawal=1_000.0, balance_0=3_500.0)
    outcome = simulate_path(params, _certain_death_table(65, 90))

    # 2500, 1500, 500, then -500 at age 69
    assert outcome.ruin_age == 69
    assert outcome.terminal_balance == 0.0


def test_empty_account_in_retirement_is_ruined():
    params = _make_params(max_age=70, balance_0=0.0)
    outcome = simulate_path(params, _certain_death_table(65, 70))

    assert outcome.ruined
    assert outcome.ruin_age == 66
    assert outcome.terminal_balance == 0.0


def test_empty_account_while_working_is_ruined():
    params = _make_params(
        start_age=30,
        retire_age=35,
        max_age=35,
        salary_0=50_000.0,
        contrib_rate=0.1,
        balance_0=0.0,
    )
    outcome = simulate_path(params, _certain_death_table(30, 35))

    assert outcome.ruined
    assert outcome.ruin_age == 31
    assert outcome.terminal_balance == 0.0
    assert outcome.state is PathState.RUINED


def test_fees_can_ruin_during_accumulation():
    params = _make_params(
        start_age=30,
        retire_age=40,
        max_age=40,
        salary_0=1_000.0,
        contrib_rate=0.1,
        flat_fee=500.0,
        balance_0=1_000.0,
    )
    outcome = simulate_path(params, _certain_death_table(30, 40))

    # balance falls by 400 a year: 600, 200, then -200 at age 33
    assert outcome.ruined
    assert outcome.ruin_age == 33


def test_stochastic_path_respects_invariants():
    params = _make_params(
        start_age=40,
        retire_age=65,
        max_age=100,
        drift=0.04,
        volatility=0.2,
        salary_0=60_000.0,
        contrib_rate=0.1,
        withdrawal=30_000.0,
        balance_0=10_000.0,
    )
    table = LifeTable.gompertz()
    rng = np.random.default_rng(2024)
    for _ in range(200):
        outcome = simulate_path(params, table, rng)
        assert outcome.terminal_balance >= 0.0
        assert outcome.ruined == (outcome.ruin_age is not None)
        assert 40 <= outcome.death_age <= 100
        if outcome.ruined:
            assert outcome.ruin_age <= outcome.death_age


def test_invalid_parameters_raise_before_simulating():
    with pytest.raises(InvalidParameterError):
        simulate_path(_make_params(retire_age=60), _certain_death_table(65, 66))
