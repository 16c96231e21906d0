"""One-factor-at-a-time stress scenarios for the ruin model."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import pandas as pd

from core import (
    LifeTable,
    SimulationParameters,
    resolve_parameter_name,
    run_monte_carlo,
)


logger = logging.getLogger(__name__)

BASE_CASE = "Base Case"


@dataclass(frozen=True)
class SensitivityScenario:
    label: str
    parameter: Optional[str]  # None for the base case
    value: Any
    ruin_probability: float


def run_scenario(
    parameter_name: str,
    new_value: Any,
    base_parameters: SimulationParameters,
    life_table: LifeTable,
    n_sim: Optional[int] = None,
    seed=None,
    parallel: bool = True,
) -> float:
    """Return the ruin probability with one parameter replaced.

    ``n_sim`` defaults to the base parameter set's path count. Raises
    UnknownParameterError for names that are not simulation parameters.
    """

    params = base_parameters.with_override(parameter_name, new_value)
    if n_sim is not None:
        params = params.with_override("n_sim", n_sim)
    result = run_monte_carlo(params, life_table, seed=seed, parallel=parallel)
    return result.ruin_probability


def default_scenarios(params: SimulationParameters) -> List[Tuple[str, str, Any]]:
    """Standard stress presets as (label, parameter, value) tuples."""

    return [
        ("High Vol (+5%)", "volatility", params.volatility + 0.05),
        ("Low Return (-1%)", "drift", params.drift - 0.01),
        ("High Withdrawal (+10k)", "withdrawal", params.withdrawal + 10_000),
        ("Higher Fees (+0.5%)", "fee_rate", params.fee_rate + 0.005),
    ]


def run_sensitivity(
    base_parameters: SimulationParameters,
    life_table: LifeTable,
    scenarios: Optional[Sequence[Tuple[str, str, Any]]] = None,
    n_sim: Optional[int] = None,
    seed=None,
    parallel: bool = True,
) -> List[SensitivityScenario]:
    """Run the base case followed by each scenario.

    Every scenario is validated before any simulation starts. When ``seed``
    is an int or SeedSequence all runs share the same random draws, so
    differences between scenarios come from the parameter change alone.
    """

    if scenarios is None:
        scenarios = default_scenarios(base_parameters)
    base = base_parameters
    if n_sim is not None:
        base = base.with_override("n_sim", n_sim)
    base.validate()
    for _, name, value in scenarios:
        base.with_override(name, value).validate()

    report = [
        SensitivityScenario(
            label=BASE_CASE,
            parameter=None,
            value=None,
            ruin_probability=run_monte_carlo(
                base, life_table, seed=seed, parallel=parallel
            ).ruin_probability,
        )
    ]
    for label, name, value in scenarios:
        prob = run_scenario(name, value, base, life_table, seed=seed, parallel=parallel)
        logger.info("Scenario %r (%s=%s): P(ruin)=%.4f", label, name, value, prob)
        report.append(
            SensitivityScenario(
                label=label,
                parameter=resolve_parameter_name(name),
                value=value,
                ruin_probability=prob,
            )
        )
    return report


def sensitivity_frame(report: Sequence[SensitivityScenario]) -> pd.DataFrame:
    """Tabulate a sensitivity report with the change against the base case."""

    frame = pd.DataFrame(
        {
            "scenario": [s.label for s in report],
            "parameter": [s.parameter for s in report],
            "value": [s.value for s in report],
            "ruin_probability": [s.ruin_probability for s in report],
        }
    )
    base = frame.loc[frame["scenario"] == BASE_CASE, "ruin_probability"]
    if not base.empty:
        frame["change"] = frame["ruin_probability"] - base.iloc[0]
    return frame
