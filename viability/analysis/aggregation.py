"""
Aggregation of trial outcomes into the simulation result.
"""
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import numpy as np

if TYPE_CHECKING:
    from viability.simulation.cash_flow import TrialOutcome

logger = logging.getLogger(__name__)

PERCENTILES = (5, 10, 25, 50, 75, 90, 95)


@dataclass
class PercentileBands:
    """Portfolio balance percentiles per age across households alive at that age."""
    ages: np.ndarray  # Shape: (num_ages,)
    values: np.ndarray  # Shape: (len(percentiles), num_ages)
    trials_at_age: np.ndarray  # Shape: (num_ages,)
    percentiles: tuple = PERCENTILES

    def band(self, percentile: int) -> np.ndarray:
        return self.values[self.percentiles.index(percentile)]

    def at_age(self, age: int) -> dict[int, float]:
        column = int(np.searchsorted(self.ages, age))
        if column >= len(self.ages) or self.ages[column] != age:
            raise KeyError(f"No trial reached age {age}")
        return {p: float(self.values[i, column]) for i, p in enumerate(self.percentiles)}


@dataclass
class GuardrailStats:
    """Guyton-Klinger adjustment statistics per trial."""
    mean_adjustments: float = 0.0
    max_adjustments: int = 0
    mean_cuts: float = 0.0
    mean_raises: float = 0.0
    trials_with_cuts: float = 0.0  # Share of trials with at least one cut


@dataclass
class LTCStats:
    """Long-term-care impact statistics."""
    incidence_rate: float = 0.0
    average_gross_cost: float = 0.0  # Among trials with an event
    average_net_cost: float = 0.0
    average_premiums: float = 0.0
    average_duration_years: float = 0.0
    success_with_ltc: float = 0.0
    success_without_ltc: Optional[float] = None

    @property
    def success_delta(self) -> Optional[float]:
        """Success probability lost to LTC shocks (positive = LTC hurts)."""
        if self.success_without_ltc is None:
            return None
        return self.success_without_ltc - self.success_with_ltc


@dataclass
class OptimalRetirementAge:
    """Earliest retirement age meeting the success target."""
    desired_age: int
    optimal_age: Optional[int]
    target: float
    success_at_desired: float
    success_at_optimal: Optional[float] = None
    evaluations: dict = field(default_factory=dict)

    @property
    def gap_years(self) -> Optional[int]:
        """Years the household must shift its plan (negative = can retire earlier)."""
        if self.optimal_age is None:
            return None
        return self.optimal_age - self.desired_age

    @property
    def can_retire_earlier(self) -> bool:
        return self.optimal_age is not None and self.optimal_age < self.desired_age


@dataclass
class AggregateResult:
    """Result of a batch of retirement trials."""
    success_probability: float
    successful_trials: int
    total_trials: int
    average_ending_balance: float
    median_ending_balance: float
    percentile_bands: PercentileBands
    average_years_until_depletion: Optional[float]
    guardrail_stats: GuardrailStats
    ltc_stats: LTCStats
    standard_error: float
    success_probability_cv: Optional[float] = None
    standard_error_cv: Optional[float] = None
    excluded_trials: int = 0
    iterations: int = 0
    seed: Optional[int] = None
    elapsed_seconds: float = 0.0
    tables_version: str = ""
    gap_analysis: list = field(default_factory=list)
    optimal_retirement_age: Optional[OptimalRetirementAge] = None
    trials: Optional[list] = field(default=None, repr=False)

    @property
    def failure_probability(self) -> float:
        return 1 - self.success_probability

    def percentile(self, p: int, age: int) -> float:
        return self.percentile_bands.at_age(age)[p]

    def summary(self) -> dict:
        """Flat summary used for exports."""
        ltc = self.ltc_stats
        guard = self.guardrail_stats
        return {
            "success_probability": self.success_probability,
            "success_probability_cv": self.success_probability_cv,
            "standard_error": self.standard_error,
            "successful_trials": self.successful_trials,
            "total_trials": self.total_trials,
            "excluded_trials": self.excluded_trials,
            "average_ending_balance": self.average_ending_balance,
            "median_ending_balance": self.median_ending_balance,
            "average_years_until_depletion": self.average_years_until_depletion,
            "mean_guardrail_adjustments": guard.mean_adjustments,
            "max_guardrail_adjustments": guard.max_adjustments,
            "ltc_incidence_rate": ltc.incidence_rate,
            "ltc_average_net_cost": ltc.average_net_cost,
            "ltc_success_delta": ltc.success_delta,
            "optimal_retirement_age": (
                self.optimal_retirement_age.optimal_age if self.optimal_retirement_age else None
            ),
            "seed": self.seed,
            "iterations": self.iterations,
            "elapsed_seconds": self.elapsed_seconds,
            "tables_version": self.tables_version,
        }


def percentile_bands(outcomes: "list[TrialOutcome]", percentiles: tuple = PERCENTILES) -> PercentileBands:
    """
    Balance percentiles at each age over the households alive at that age.

    A depleted household counts with a zero balance from its depletion age
    until its death age.
    """
    if not outcomes:
        empty = np.zeros(0)
        return PercentileBands(empty, np.zeros((len(percentiles), 0)), empty.astype(int), percentiles)

    start = min(o.start_age for o in outcomes)
    end = max(o.start_age + max(len(o.balances), o.death_age - o.start_age) for o in outcomes)
    matrix = np.full((len(outcomes), end - start), np.nan)
    for row, outcome in enumerate(outcomes):
        offset = outcome.start_age - start
        matrix[row, offset:offset + len(outcome.balances)] = outcome.balances
        if not outcome.success:
            matrix[row, offset + len(outcome.balances):outcome.death_age - start] = 0.0

    counts = np.sum(~np.isnan(matrix), axis=0)
    reached = counts > 0
    values = np.nanpercentile(matrix[:, reached], percentiles, axis=0)
    return PercentileBands(
        ages=np.arange(start, end)[reached],
        values=values,
        trials_at_age=counts[reached],
        percentiles=percentiles,
    )


class AggregationEngine:
    """Turns included trial outcomes into an AggregateResult."""

    def __init__(self, retirement_age: int, percentiles: tuple = PERCENTILES):
        self.retirement_age = retirement_age
        self.percentiles = percentiles

    def aggregate(self, outcomes: "list[TrialOutcome]", excluded_trials: int = 0) -> AggregateResult:
        """
        Aggregate outcomes (already excluding corrupted trials).

        Args:
            outcomes: Outcomes ordered by trial index
            excluded_trials: Number of trials dropped for numerical failures

        Returns:
            AggregateResult without gap analysis or timing metadata
        """
        if not outcomes:
            raise ValueError("Cannot aggregate an empty set of trials")

        n = len(outcomes)
        success = np.array([o.success for o in outcomes], dtype=np.float64)
        endings = np.array([o.ending_balance for o in outcomes])
        successful = int(success.sum())
        probability = successful / n

        failed_years = [
            o.depletion_age - self.retirement_age for o in outcomes
            if not o.success and o.depletion_age is not None
        ]
        average_depletion = float(np.mean(failed_years)) if failed_years else None

        cv_probability, cv_error = self.control_variate_estimate(
            success, np.array([o.control_variate for o in outcomes])
        )
        logger.debug("Aggregated %d trials: success %.4f (cv %s)", n, probability, cv_probability)

        return AggregateResult(
            success_probability=probability,
            successful_trials=successful,
            total_trials=n,
            average_ending_balance=float(np.mean(endings)),
            median_ending_balance=float(np.median(endings)),
            percentile_bands=percentile_bands(outcomes, self.percentiles),
            average_years_until_depletion=average_depletion,
            guardrail_stats=self.guardrail_stats(outcomes),
            ltc_stats=self.ltc_stats(outcomes, probability),
            standard_error=float(np.sqrt(probability * (1 - probability) / n)),
            success_probability_cv=cv_probability,
            standard_error_cv=cv_error,
            excluded_trials=excluded_trials,
            iterations=n + excluded_trials,
        )

    @staticmethod
    def control_variate_estimate(
        indicators: np.ndarray,
        control: np.ndarray
    ) -> tuple[Optional[float], Optional[float]]:
        """
        Control-variate adjusted success probability using a control with
        known mean 1. Returns (None, None) when the control has no variance.
        """
        n = len(indicators)
        if n < 3:
            return None, None
        control_var = np.var(control, ddof=1)
        if control_var <= 0 or not np.isfinite(control_var):
            return None, None
        beta = np.cov(indicators, control, ddof=1)[0, 1] / control_var
        adjusted = indicators - beta * (control - 1.0)
        estimate = float(np.clip(adjusted.mean(), 0.0, 1.0))
        error = float(np.std(adjusted, ddof=1) / np.sqrt(n))
        return estimate, error

    @staticmethod
    def guardrail_stats(outcomes: "list[TrialOutcome]") -> GuardrailStats:
        adjustments = np.array([o.guardrail_adjustments for o in outcomes])
        cuts = np.array([o.guardrail_cuts for o in outcomes])
        raises = np.array([o.guardrail_raises for o in outcomes])
        return GuardrailStats(
            mean_adjustments=float(adjustments.mean()),
            max_adjustments=int(adjustments.max()),
            mean_cuts=float(cuts.mean()),
            mean_raises=float(raises.mean()),
            trials_with_cuts=float(np.mean(cuts > 0)),
        )

    @staticmethod
    def ltc_stats(outcomes: "list[TrialOutcome]", success_probability: float) -> LTCStats:
        affected = [o for o in outcomes if o.had_ltc_event]
        stats = LTCStats(
            incidence_rate=len(affected) / len(outcomes),
            average_premiums=float(np.mean([o.ltc_premiums for o in outcomes])),
            success_with_ltc=success_probability,
        )
        if affected:
            stats.average_gross_cost = float(np.mean([o.ltc_gross_cost for o in affected]))
            stats.average_net_cost = float(np.mean([o.ltc_net_cost for o in affected]))
            stats.average_duration_years = float(np.mean([o.ltc_event.duration_years for o in affected]))

        # Matched comparison: trials without an event count with their own result
        if all(o.success_without_ltc is not None for o in affected):
            without = [
                o.success_without_ltc if o.had_ltc_event else o.success
                for o in outcomes
            ]
            stats.success_without_ltc = float(np.mean(without))
        return stats
