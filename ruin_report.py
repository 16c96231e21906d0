"""Command line front end: load inputs, run the ruin model, print and chart results."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from pythonjsonlogger.json import JsonFormatter

from core import (
    CONFIG_FILE,
    DegenerateTableError,
    LifeTable,
    MonteCarloResult,
    RuinModelError,
    load_config,
    parameters_from_config,
    run_monte_carlo,
    save_config,
)
from sensitivity import SensitivityScenario, run_sensitivity, sensitivity_frame


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure structured JSON logging on stdout."""

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(isinstance(h.formatter, JsonFormatter) for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s")
        )
        root_logger.addHandler(handler)
    return root_logger


def load_life_table(path: str, year: Optional[int] = None) -> LifeTable:
    """Read a life table CSV.

    Two layouts are accepted: ``age,lx`` columns of survivor counts, or a
    ``Year`` column followed by one column per age holding q(x), one row
    per table year. ``year`` picks the row in the second layout and
    defaults to the first one.
    """

    df = pd.read_csv(path)
    name = os.path.splitext(os.path.basename(path))[0]
    columns = {c.strip().lower(): c for c in df.columns}

    if "age" in columns and "lx" in columns:
        return LifeTable(
            df[columns["age"]].astype(int).values,
            df[columns["lx"]].astype(float).values,
            name=name,
        )

    if "year" in columns:
        year_col = columns["year"]
        rows = df if year is None else df[df[year_col] == year]
        if rows.empty:
            raise DegenerateTableError(f"No row for year {year} in {path}")
        row = rows.iloc[0].drop(year_col)
        ages = [int(float(a)) for a in row.index]
        if np.any(np.diff(ages) != 1):
            raise DegenerateTableError("Death probability columns must be consecutive ages")
        return LifeTable.from_death_probabilities(
            row.astype(float).values, start_age=ages[0], name=name
        )

    raise DegenerateTableError(
        f"{path}: expected 'age' and 'lx' columns or a 'Year' column"
    )


def format_summary(result: MonteCarloResult) -> str:
    """Human readable risk summary."""

    summary = result.summary()
    pct = int(round(summary["level"] * 100))
    lines = [
        f"Paths simulated: {summary['n_sim']:,}",
        f"Probability of ruin: {summary['ruin_probability']:.2%}",
        f"VaR ({pct}%) terminal balance: ${summary['var']:,.0f}",
        f"TVaR ({pct}%) terminal balance: ${summary['tvar']:,.0f}",
        f"Median terminal balance: ${summary['median_terminal_balance']:,.0f}",
        f"Mean death age: {summary['mean_death_age']:.1f}",
    ]
    return "\n".join(lines)


def plot_ruin_by_age(result: MonteCarloResult, path: str) -> None:
    """Save the cumulative ruin probability by age as a line chart."""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    curve = result.ruin_probability_by_age()
    fig, ax = plt.subplots(figsize=(8, 4))
    ax.plot(curve.index, curve.values, color="steelblue")
    ax.set_xlabel("Age")
    ax.set_ylabel("Probability of Ruin")
    ax.set_title("Probability of Ruin by Age")
    ax.set_ylim(bottom=0)
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)


def plot_sensitivity(report: Sequence[SensitivityScenario], path: str) -> None:
    """Save a horizontal bar chart of ruin probability per scenario."""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    ordered = sorted(report, key=lambda s: s.ruin_probability)
    fig, ax = plt.subplots(figsize=(8, 4))
    ax.barh(
        [s.label for s in ordered],
        [s.ruin_probability for s in ordered],
        color="steelblue",
    )
    ax.set_xlabel("P(Ruin)")
    ax.set_ylabel("Stress Scenario")
    ax.set_title("Sensitivity Analysis: Probability of Ruin")
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Monte Carlo probability of retirement account ruin"
    )
    parser.add_argument("--config", default=CONFIG_FILE, help="JSON parameter file")
    parser.add_argument("--life-table", help="life table CSV (default: Gompertz-Makeham)")
    parser.add_argument("--year", type=int, help="row of a Year-indexed death probability table")
    parser.add_argument("--n-sim", type=int, help="override the number of paths")
    parser.add_argument("--seed", type=int, help="random seed")
    parser.add_argument("--no-sensitivity", action="store_true", help="skip stress scenarios")
    parser.add_argument("--output-dir", help="directory for PNG charts")
    parser.add_argument("--save-config", action="store_true", help="write parameters back to --config")
    parser.add_argument("--log-level", default="INFO")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        params, seed = parameters_from_config(load_config(args.config))
        if args.n_sim is not None:
            params = params.with_override("n_sim", args.n_sim)
        if args.seed is not None:
            seed = args.seed
        if seed is None:
            # Sensitivity runs share the base case draws only with a fixed seed
            seed = int(np.random.SeedSequence().entropy % (2**63))
        logger.info("Using seed %d", seed)

        if args.life_table:
            table = load_life_table(args.life_table, args.year)
        else:
            table = LifeTable.gompertz()

        result = run_monte_carlo(params, table, seed=seed)
        report = [] if args.no_sensitivity else run_sensitivity(params, table, seed=seed)
    except RuinModelError as exc:
        logger.error("Invalid input: %s", exc)
        return 2

    print(format_summary(result))
    if report:
        print()
        print(sensitivity_frame(report).to_string(index=False))

    if args.output_dir:
        os.makedirs(args.output_dir, exist_ok=True)
        plot_ruin_by_age(result, os.path.join(args.output_dir, "ruin_by_age.png"))
        if report:
            plot_sensitivity(report, os.path.join(args.output_dir, "sensitivity.png"))

    if args.save_config:
        save_config(params, args.config, seed)
    return 0


if __name__ == "__main__":
    sys.exit(main())
