"""Core functionality for retirement ruin simulations."""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, fields, replace
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from numba import njit, prange


logger = logging.getLogger(__name__)


CONFIG_FILE = "config.json"

# Default Value-at-Risk level
VAR_LEVEL = 0.05

# Paths whose random draws are held in memory at once
DEFAULT_CHUNK_SIZE = 50_000

# Survivor count at the first age of tables built from death probabilities
LIFE_TABLE_RADIX = 100_000.0

# Kernel state codes, mirrored by PathState
_ACCUMULATING = 0
_WITHDRAWING = 1
_DIED = 2
_RUINED = 3
_NO_RUIN = -1


class RuinModelError(ValueError):
    """Base class for invalid inputs to the ruin model."""


class InvalidParameterError(RuinModelError):
    """A simulation parameter is out of range or inconsistent."""


class InvalidRangeError(InvalidParameterError):
    """The requested age range does not overlap the life table."""


class UnknownParameterError(RuinModelError):
    """A parameter override names a field that does not exist."""


class DegenerateTableError(RuinModelError):
    """A life table cannot produce mortality probabilities."""


class PathState(IntEnum):
    ACCUMULATING = _ACCUMULATING
    WITHDRAWING = _WITHDRAWING
    DIED = _DIED
    RUINED = _RUINED


@dataclass(frozen=True)
class SimulationParameters:
    n_sim: int = 10_000
    start_age: int = 30
    retire_age: int = 65
    max_age: int = 110
    drift: float = 0.05  # log of expected gross real return
    volatility: float = 0.15
    inflation: float = 0.02  # informational only
    salary_0: float = 70_000.0
    salary_growth: float = 0.01  # real
    contrib_rate: float = 0.10
    withdrawal: float = 40_000.0  # fixed real amount
    fee_rate: float = 0.005
    flat_fee: float = 300.0
    balance_0: float = 50_000.0

    def validate(self) -> None:
        """Raise InvalidParameterError unless the parameters describe a valid run."""

        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in INT_FIELDS:
                if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                    raise InvalidParameterError(f"{f.name} must be an integer, got {value!r}")
            elif not math.isfinite(value):
                raise InvalidParameterError(f"{f.name} must be finite, got {value!r}")

        if self.n_sim <= 0:
            raise InvalidParameterError("Number of simulations must be positive")
        if self.start_age < 0:
            raise InvalidParameterError("Ages must be non-negative")
        if self.retire_age < self.start_age:
            raise InvalidParameterError(
                "Retirement age must be greater than or equal to start age"
            )
        if self.retire_age > self.max_age:
            raise InvalidParameterError("Retirement age cannot exceed max age")
        if self.max_age <= self.start_age:
            raise InvalidParameterError("Max age must be greater than start age")
        for name in NON_NEGATIVE_FIELDS:
            if getattr(self, name) < 0:
                raise InvalidParameterError(f"{name} cannot be negative")

    @property
    def horizon(self) -> int:
        """Number of yearly steps between start age and max age."""
        return self.max_age - self.start_age

    def with_override(self, name: str, value: Any) -> "SimulationParameters":
        """Return a copy with a single field replaced."""
        return self.with_overrides({name: value})

    def with_overrides(self, overrides: Dict[str, Any]) -> "SimulationParameters":
        changes = {}
        for name, value in overrides.items():
            field_name = resolve_parameter_name(name)
            changes[field_name] = _coerce_parameter(field_name, value)
        return replace(self, **changes)

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def _kernel_args(self) -> tuple:
        return (
            int(self.start_age),
            int(self.retire_age),
            int(self.max_age),
            float(self.drift),
            float(self.volatility),
            float(self.salary_0),
            float(self.salary_growth),
            float(self.contrib_rate),
            float(self.withdrawal),
            float(self.fee_rate),
            float(self.flat_fee),
            float(self.balance_0),
        )


INT_FIELDS = frozenset({"n_sim", "start_age", "retire_age", "max_age"})

NON_NEGATIVE_FIELDS = (
    "volatility",
    "inflation",
    "salary_0",
    "salary_growth",
    "contrib_rate",
    "withdrawal",
    "fee_rate",
    "flat_fee",
    "balance_0",
)

PARAMETER_NAMES = tuple(f.name for f in fields(SimulationParameters))

# Short names accepted as aliases
PARAMETER_ALIASES = {
    "mu": "drift",
    "sigma": "volatility",
    "infl": "inflation",
    "real_withdrawal": "withdrawal",
    "fee_pct": "fee_rate",
    "fee_flat": "flat_fee",
}

DEFAULT_PARAMETERS = SimulationParameters()


def resolve_parameter_name(name: str) -> str:
    """Map a field name or alias to a SimulationParameters field."""

    if name in PARAMETER_NAMES:
        return name
    if name in PARAMETER_ALIASES:
        return PARAMETER_ALIASES[name]
    raise UnknownParameterError(f"Unknown parameter: {name!r}")


def _coerce_parameter(name: str, value: Any) -> Union[int, float]:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidParameterError(f"Invalid value for {name}: {value!r}") from exc
    if name in INT_FIELDS:
        if not number.is_integer():
            raise InvalidParameterError(f"{name} must be a whole number, got {value!r}")
        return int(number)
    return number


class LifeTable:
    """Survivor counts by integer age.

    The table is read-only once built and may be shared by any number of
    simulations.
    """

    def __init__(self, ages: Sequence[int], survivors: Sequence[float], name: str = ""):
        self._ages = np.array(ages, dtype=np.int64)
        self._survivors = np.array(survivors, dtype=np.float64)
        self._ages.setflags(write=False)
        self._survivors.setflags(write=False)
        self.name = name
        if self._ages.shape != self._survivors.shape or self._ages.ndim != 1:
            raise DegenerateTableError("Ages and survivor counts must be 1-D and equal length")

    @classmethod
    def from_pairs(cls, pairs, name: str = "") -> "LifeTable":
        """Build a table from (age, survivors) pairs or an {age: survivors} mapping."""
        if hasattr(pairs, "items"):
            pairs = pairs.items()
        pairs = list(pairs)
        return cls([a for a, _ in pairs], [lx for _, lx in pairs], name=name)

    @classmethod
    def from_death_probabilities(
        cls,
        death_probs: Sequence[float],
        start_age: int = 0,
        radix: float = LIFE_TABLE_RADIX,
        name: str = "",
    ) -> "LifeTable":
        """Build survivor counts from one-year death probabilities q(x)."""

        qx = np.asarray(death_probs, dtype=np.float64)
        if qx.ndim != 1 or qx.size == 0:
            raise DegenerateTableError("Death probabilities must be a non-empty 1-D sequence")
        if np.any(~np.isfinite(qx)) or np.any(qx < 0) or np.any(qx > 1):
            raise DegenerateTableError("Death probabilities must lie in [0, 1]")
        survivors = radix * np.concatenate(([1.0], np.cumprod(1.0 - qx[:-1])))
        ages = np.arange(start_age, start_age + qx.size)
        return cls(ages, survivors, name=name)

    @classmethod
    def gompertz(
        cls,
        min_age: int = 0,
        max_age: int = 120,
        a: float = 0.00022,
        b: float = 2.7e-6,
        c: float = 1.124,
        radix: float = LIFE_TABLE_RADIX,
    ) -> "LifeTable":
        """Gompertz-Makeham table with force of mortality a + b * c**x."""

        ages = np.arange(min_age, max_age + 1)
        log_p = -a - b * c ** ages[:-1] * (c - 1.0) / math.log(c)
        survivors = radix * np.exp(np.concatenate(([0.0], np.cumsum(log_p))))
        return cls(ages, survivors, name="Gompertz-Makeham")

    @property
    def ages(self) -> np.ndarray:
        return self._ages

    @property
    def survivor_counts(self) -> np.ndarray:
        return self._survivors

    def __len__(self) -> int:
        return int(self._ages.size)

    def __repr__(self) -> str:
        if not len(self):
            return f"LifeTable(name={self.name!r}, empty)"
        return (
            f"LifeTable(name={self.name!r}, ages={self._ages[0]}..{self._ages[-1]})"
        )

    def validate(self) -> None:
        """Raise DegenerateTableError unless the table is usable."""

        if self._ages.size == 0:
            raise DegenerateTableError("Life table is empty")
        if np.any(np.diff(self._ages) <= 0):
            raise DegenerateTableError("Life table ages must be strictly increasing")
        if np.any(~np.isfinite(self._survivors)) or np.any(self._survivors < 0):
            raise DegenerateTableError("Survivor counts must be finite and non-negative")
        if np.any(np.diff(self._survivors) > 0):
            raise DegenerateTableError("Survivor counts must be non-increasing")

    def survivors(self, age: int) -> float:
        """Number of survivors at ``age``; zero past the last tabulated age."""

        if age > self._ages[-1]:
            return 0.0
        idx = np.searchsorted(self._ages, age)
        if idx >= self._ages.size or self._ages[idx] != age:
            raise InvalidRangeError(f"Age {age} is not in the life table")
        return float(self._survivors[idx])

    def mortality_rate(self, age: int) -> float:
        """One-year death probability q(x) from consecutive survivor counts."""

        lx = self.survivors(age)
        if lx <= 0:
            raise DegenerateTableError(f"No survivors at age {age}")
        return (lx - self.survivors(age + 1)) / lx

    def death_distribution(self, start_age: int, max_age: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return candidate death ages and their normalized q(x) weights.

        The last age in ``[start_age, max_age]`` absorbs every remaining
        survivor, so each simulated life ends by ``max_age``.
        """

        self.validate()
        if start_age < self._ages[0] or start_age > self._ages[-1]:
            raise InvalidRangeError(
                f"Start age {start_age} is outside the life table "
                f"({self._ages[0]}..{self._ages[-1]})"
            )
        mask = (self._ages >= start_age) & (self._ages <= max_age)
        if not np.any(mask):
            raise InvalidRangeError(f"No life table ages between {start_age} and {max_age}")
        ages = self._ages[mask]
        lx = self._survivors[mask]
        if lx[0] <= 0:
            raise DegenerateTableError(f"No survivors at start age {ages[0]}")

        dx = lx - np.append(lx[1:], 0.0)
        qx = np.zeros_like(lx)
        alive = lx > 0
        qx[alive] = dx[alive] / lx[alive]
        return ages, qx / qx.sum()


def make_rng(seed=None) -> np.random.Generator:
    """Return a Generator for an int seed, SeedSequence, Generator or None."""

    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def sample_death_age(
    start_age: int, life_table: LifeTable, max_age: int, rng=None
) -> int:
    """Draw one death age in ``[start_age, max_age]`` from the life table.

    Death is fixed up front and independent of investment experience.
    """

    ages, weights = life_table.death_distribution(start_age, max_age)
    return int(make_rng(rng).choice(ages, p=weights))


def sample_death_ages(
    n: int, start_age: int, life_table: LifeTable, max_age: int, rng=None
) -> np.ndarray:
    """Draw ``n`` independent death ages."""

    ages, weights = life_table.death_distribution(start_age, max_age)
    return make_rng(rng).choice(ages, size=n, p=weights)


@njit(cache=True)
def _gross_return(drift: float, volatility: float, z: float) -> float:
    """Lognormal gross return with E[R] = exp(drift)."""
    return math.exp((drift - 0.5 * volatility * volatility) + volatility * z)


@njit(cache=True)
def _gross_returns(drift: float, volatility: float, z: np.ndarray) -> np.ndarray:
    out = np.empty(z.shape[0], dtype=np.float64)
    for i in range(z.shape[0]):
        out[i] = _gross_return(drift, volatility, z[i])
    return out


def sample_return(drift: float, volatility: float, rng=None) -> float:
    """Draw one annual gross real return."""

    return _gross_return(drift, volatility, make_rng(rng).standard_normal())


def sample_returns(n: int, drift: float, volatility: float, rng=None) -> np.ndarray:
    """Draw ``n`` i.i.d. annual gross real returns."""

    return _gross_returns(drift, volatility, make_rng(rng).standard_normal(n))


@njit(cache=True)
def _advance_path(
    start_age: int,
    retire_age: int,
    max_age: int,
    drift: float,
    volatility: float,
    salary_0: float,
    salary_growth: float,
    contrib_rate: float,
    withdrawal: float,
    fee_rate: float,
    flat_fee: float,
    balance_0: float,
    death_age: int,
    shocks: np.ndarray,
) -> Tuple[float, int, int]:
    """Advance one account from start age until death, ruin or max age.

    ``shocks[t - 1]`` is the standard normal draw for the year ending at
    ``start_age + t``. Returns (terminal balance, terminal state, ruin age).
    """
    balance = balance_0
    salary = salary_0
    state = _ACCUMULATING if start_age < retire_age else _WITHDRAWING
    ruin_age = _NO_RUIN

    for t in range(1, max_age - start_age + 1):
        age = start_age + t
        if age >= retire_age:
            state = _WITHDRAWING
        if age > death_age:
            break
        if balance <= 0.0:
            balance = 0.0
            state = _RUINED
            ruin_age = age
            break

        R = _gross_return(drift, volatility, shocks[t - 1])
        fees = fee_rate * balance + flat_fee

        if state == _ACCUMULATING:
            contribution = contrib_rate * salary
            cash_out = 0.0
            salary = salary * (1.0 + salary_growth)
        else:
            contribution = 0.0
            cash_out = withdrawal

        balance = (balance - fees + contribution - cash_out) * R

        if balance <= 0.0:
            balance = 0.0
            state = _RUINED
            ruin_age = age
            break

    if state != _RUINED:
        state = _DIED
    return balance, state, ruin_age


@njit(cache=True)
def _simulate_paths_serial(
    death_ages: np.ndarray,
    shocks: np.ndarray,
    start_age: int,
    retire_age: int,
    max_age: int,
    drift: float,
    volatility: float,
    salary_0: float,
    salary_growth: float,
    contrib_rate: float,
    withdrawal: float,
    fee_rate: float,
    flat_fee: float,
    balance_0: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    n = death_ages.shape[0]
    balances = np.empty(n, dtype=np.float64)
    states = np.empty(n, dtype=np.int64)
    ruin_ages = np.empty(n, dtype=np.int64)
    for i in range(n):
        b, s, r = _advance_path(
            start_age, retire_age, max_age, drift, volatility, salary_0,
            salary_growth, contrib_rate, withdrawal, fee_rate, flat_fee,
            balance_0, death_ages[i], shocks[i],
        )
        balances[i] = b
        states[i] = s
        ruin_ages[i] = r
    return balances, states, ruin_ages


@njit(cache=True, parallel=True)
def _simulate_paths_parallel(
    death_ages: np.ndarray,
    shocks: np.ndarray,
    start_age: int,
    retire_age: int,
    max_age: int,
    drift: float,
    volatility: float,
    salary_0: float,
    salary_growth: float,
    contrib_rate: float,
    withdrawal: float,
    fee_rate: float,
    flat_fee: float,
    balance_0: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Same as _simulate_paths_serial with paths spread over threads."""
    n = death_ages.shape[0]
    balances = np.empty(n, dtype=np.float64)
    states = np.empty(n, dtype=np.int64)
    ruin_ages = np.empty(n, dtype=np.int64)
    for i in prange(n):
        b, s, r = _advance_path(
            start_age, retire_age, max_age, drift, volatility, salary_0,
            salary_growth, contrib_rate, withdrawal, fee_rate, flat_fee,
            balance_0, death_ages[i], shocks[i],
        )
        balances[i] = b
        states[i] = s
        ruin_ages[i] = r
    return balances, states, ruin_ages


@dataclass(frozen=True)
class PathOutcome:
    terminal_balance: float
    ruined: bool
    ruin_age: Optional[int]
    death_age: int
    state: PathState = PathState.DIED


def simulate_path(params: SimulationParameters, life_table: LifeTable, rng=None) -> PathOutcome:
    """Simulate a single individual's account from start age to death or ruin."""

    params.validate()
    rng = make_rng(rng)
    death_age = sample_death_age(params.start_age, life_table, params.max_age, rng)
    shocks = rng.standard_normal(params.horizon)
    balance, state, ruin_age = _advance_path(*params._kernel_args(), death_age, shocks)
    ruined = state == _RUINED
    return PathOutcome(
        terminal_balance=float(balance),
        ruined=ruined,
        ruin_age=int(ruin_age) if ruined else None,
        death_age=death_age,
        state=PathState(state),
    )


@dataclass(frozen=True, eq=False)
class MonteCarloResult:
    """Outcomes of a Monte Carlo run and the risk measures derived from them."""

    parameters: SimulationParameters
    terminal_balances: np.ndarray
    ruined: np.ndarray
    ruin_ages: np.ndarray  # -1 where the path was not ruined
    death_ages: np.ndarray
    states: np.ndarray
    level: float = VAR_LEVEL
    seed: Optional[int] = None

    @property
    def n_sim(self) -> int:
        return int(self.terminal_balances.size)

    @property
    def ruin_probability(self) -> float:
        return float(np.mean(self.ruined))

    @property
    def var(self) -> float:
        """Empirical ``level`` quantile of terminal balances (linear interpolation)."""
        return float(np.quantile(self.terminal_balances, self.level))

    @property
    def tvar(self) -> float:
        """Mean terminal balance at or below VaR; equals VaR if no balance qualifies."""
        var = self.var
        tail = self.terminal_balances[self.terminal_balances <= var]
        if tail.size == 0:
            return var
        return min(float(tail.mean()), var)

    @property
    def outcomes(self) -> List[PathOutcome]:
        return [
            PathOutcome(
                terminal_balance=float(b),
                ruined=bool(r),
                ruin_age=int(a) if r else None,
                death_age=int(d),
                state=PathState(int(s)),
            )
            for b, r, a, d, s in zip(
                self.terminal_balances,
                self.ruined,
                self.ruin_ages,
                self.death_ages,
                self.states,
            )
        ]

    def ruin_probability_by_age(self, ages: Optional[Sequence[int]] = None) -> pd.Series:
        """Cumulative share of all paths ruined at or before each age.

        Defaults to ages from retirement to max age.
        """
        if ages is None:
            ages = range(self.parameters.retire_age, self.parameters.max_age + 1)
        ages = np.asarray(list(ages), dtype=np.int64)
        ruined_ages = self.ruin_ages[self.ruined]
        counts = np.searchsorted(np.sort(ruined_ages), ages, side="right")
        return pd.Series(
            counts / self.n_sim,
            index=pd.Index(ages, name="age"),
            name="ruin_probability",
        )

    def summary(self) -> Dict[str, float]:
        return {
            "n_sim": self.n_sim,
            "ruin_probability": self.ruin_probability,
            "var": self.var,
            "tvar": self.tvar,
            "level": self.level,
            "mean_terminal_balance": float(np.mean(self.terminal_balances)),
            "median_terminal_balance": float(np.median(self.terminal_balances)),
            "mean_death_age": float(np.mean(self.death_ages)),
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per simulated path."""
        ruin_age = pd.Series(self.ruin_ages).where(self.ruined).astype("Int64")
        return pd.DataFrame(
            {
                "terminal_balance": self.terminal_balances,
                "ruined": self.ruined,
                "ruin_age": ruin_age,
                "death_age": self.death_ages,
                "state": [PathState(int(s)).name for s in self.states],
            }
        )


def run_monte_carlo(
    params: SimulationParameters,
    life_table: LifeTable,
    seed=None,
    level: float = VAR_LEVEL,
    parallel: bool = True,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> MonteCarloResult:
    """Run ``params.n_sim`` independent paths and aggregate their outcomes.

    All random numbers are drawn from ``seed`` in the calling thread before
    the compiled kernel runs, so serial and parallel runs with the same seed
    return identical results. Paths are processed ``chunk_size`` at a time
    to bound memory.
    """

    params.validate()
    ages, weights = life_table.death_distribution(params.start_age, params.max_age)
    if not 0.0 < level < 1.0:
        raise InvalidParameterError("VaR level must be between 0 and 1")
    if chunk_size <= 0:
        raise InvalidParameterError("chunk_size must be positive")

    rng = make_rng(seed)
    n_sims = params.n_sim
    horizon = params.horizon
    kernel = _simulate_paths_parallel if parallel else _simulate_paths_serial
    kernel_args = params._kernel_args()

    logger.info(
        "Running %d paths from age %d to %d (parallel=%s)",
        n_sims, params.start_age, params.max_age, parallel,
    )

    balances = np.empty(n_sims, dtype=np.float64)
    states = np.empty(n_sims, dtype=np.int64)
    ruin_ages = np.empty(n_sims, dtype=np.int64)
    death_ages = np.empty(n_sims, dtype=np.int64)

    for lo in range(0, n_sims, chunk_size):
        hi = min(lo + chunk_size, n_sims)
        chunk_deaths = rng.choice(ages, size=hi - lo, p=weights).astype(np.int64)
        shocks = rng.standard_normal((hi - lo, horizon))
        b, s, r = kernel(chunk_deaths, shocks, *kernel_args)
        balances[lo:hi] = b
        states[lo:hi] = s
        ruin_ages[lo:hi] = r
        death_ages[lo:hi] = chunk_deaths
        logger.debug("Simulated paths %d-%d of %d", lo, hi, n_sims)

    result = MonteCarloResult(
        parameters=params,
        terminal_balances=balances,
        ruined=states == _RUINED,
        ruin_ages=ruin_ages,
        death_ages=death_ages,
        states=states,
        level=level,
        seed=seed if isinstance(seed, int) else None,
    )
    logger.info(
        "Finished %d paths: P(ruin)=%.4f VaR=%.2f TVaR=%.2f",
        n_sims, result.ruin_probability, result.var, result.tvar,
    )
    return result


GENERAL_KEYS = ("n_sim", "drift", "volatility", "inflation")


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load saved configuration if available."""

    if os.path.exists(path):
        with open(path) as f:
            return json.load(f)
    return {}


def parameters_from_config(data: dict) -> Tuple[SimulationParameters, Optional[int]]:
    """Overlay a loaded configuration on the defaults.

    Returns the validated parameters and the saved seed, if any.
    """

    overrides = {}
    seed = None
    for section in ("general", "user"):
        for key, value in data.get(section, {}).items():
            if key == "seed":
                seed = None if value is None else int(value)
                continue
            overrides[key] = value
    params = DEFAULT_PARAMETERS.with_overrides(overrides)
    params.validate()
    return params, seed


def save_config(
    params: SimulationParameters, path: str = CONFIG_FILE, seed: Optional[int] = None
) -> None:
    """Persist the provided parameters to disk."""

    values = params.as_dict()
    data = {
        "general": {key: values[key] for key in GENERAL_KEYS},
        "user": {key: val for key, val in values.items() if key not in GENERAL_KEYS},
    }
    data["general"]["seed"] = seed
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
