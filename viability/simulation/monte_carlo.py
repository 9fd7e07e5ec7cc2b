"""
Monte Carlo engine for retirement viability.

Runs independent trials (sequentially or on a process pool), merges them by
trial index and aggregates the outcomes.
"""
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from dataclasses import dataclass
from typing import Optional

import numpy as np

from viability.analysis.aggregation import AggregateResult, AggregationEngine
from viability.analysis import gap_analysis as gaps
from viability.data.tables import PolicyTables, load_policy_tables
from viability.simulation.cash_flow import CashFlowProjector, TrialNumericalError, TrialOutcome
from viability.simulation.parameters import SimulationParameters, validate_iterations
from viability.simulation.scenarios import ScenarioGenerator, VarianceReductionConfig
from viability.simulation.withdrawal import GuardrailConfig

logger = logging.getLogger(__name__)


class SimulationError(RuntimeError):
    """A batch could not produce a complete result."""

    def __init__(self, message: str, completed_trials: int = 0):
        self.completed_trials = completed_trials
        super().__init__(message)


class SimulationCancelled(SimulationError):
    """The caller cancelled the batch."""


class SimulationTimeout(SimulationError):
    """The batch exceeded its time budget."""


class CancellationToken:
    """Cooperative cancellation flag checked between trials and chunks."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ChunkResult:
    """Outcomes of a contiguous range of trials."""
    outcomes: list
    excluded: list  # (trial_index, detail)


@dataclass(frozen=True)
class TrialSettings:
    """Everything a worker needs to rebuild its generator and projector."""
    params: SimulationParameters
    num_trials: int
    seed: int
    tables: PolicyTables
    variance_reduction: VarianceReductionConfig
    guardrails: GuardrailConfig
    ltc_impact_analysis: bool
    retain_until: int  # Trials below this index keep their cash-flow trace


def _should_stop(cancel_token, deadline) -> bool:
    if cancel_token is not None and cancel_token.cancelled:
        return True
    return deadline is not None and time.monotonic() > deadline


def _run_chunk(settings: TrialSettings, start: int, stop: int, cancel_token=None, deadline=None) -> ChunkResult:
    """Run trials ``[start, stop)``; module-level so worker processes can pickle it."""
    generator = ScenarioGenerator(
        settings.params, settings.num_trials, settings.seed,
        tables=settings.tables, variance_reduction=settings.variance_reduction,
    )
    projector = CashFlowProjector(settings.params, settings.tables, settings.guardrails)
    result = ChunkResult(outcomes=[], excluded=[])

    for trial_index in range(start, stop):
        if _should_stop(cancel_token, deadline):
            break
        try:
            scenario = generator.generate(trial_index)
            if not np.all(np.isfinite(scenario.returns)):
                raise TrialNumericalError(trial_index, "non-finite return draw")
            outcome = projector.project(scenario, record_trace=trial_index < settings.retain_until)
            if settings.ltc_impact_analysis and scenario.ltc_event is not None:
                outcome.success_without_ltc = projector.project(scenario, include_ltc=False).success
        except TrialNumericalError as exc:
            result.excluded.append((trial_index, exc.detail))
            continue
        result.outcomes.append(outcome)
    return result


class MonteCarloSimulator:
    """
    Monte Carlo simulator for retirement plans.

    Each trial draws its own returns, regimes, death ages and LTC event from
    ``(seed, trial_index)``, so results do not depend on the worker count or
    the order in which chunks finish.
    """

    def __init__(
        self,
        num_simulations: int = 1000,
        random_seed: Optional[int] = None,
        max_workers: int = 1,
        chunk_size: Optional[int] = None,
        retain_trials: bool = False,
        max_retained_trials: int = 100,
        variance_reduction: Optional[VarianceReductionConfig] = None,
        guardrails: Optional[GuardrailConfig] = None,
        tables: Optional[PolicyTables] = None,
        time_budget: Optional[float] = None,
        gap_analysis: bool = True,
        gap_config: Optional["gaps.GapAnalysisConfig"] = None,
        optimal_age_search: bool = True,
        ltc_impact_analysis: bool = True
    ):
        """
        Args:
            num_simulations: Number of trials
            random_seed: Master seed; drawn from OS entropy when None
            max_workers: Worker processes (1 runs in the calling process)
            chunk_size: Trials per dispatched chunk
            retain_trials: Keep per-trial cash-flow traces on the result
            max_retained_trials: Cap on retained traces
            variance_reduction: Antithetic/LHS/control-variate switches
            guardrails: Guyton-Klinger settings
            tables: Policy tables (packaged 2024 tables by default)
            time_budget: Seconds before the batch is abandoned
            gap_analysis: Rank interventions when below target
            gap_config: Intervention menu and target
            optimal_age_search: Search the earliest viable retirement age
            ltc_impact_analysis: Re-run LTC trials without the event
        """
        validate_iterations(num_simulations)
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if time_budget is not None and time_budget <= 0:
            raise ValueError("time_budget must be positive")

        self.num_simulations = int(num_simulations)
        self.random_seed = (
            int(random_seed) if random_seed is not None
            else int(np.random.SeedSequence().generate_state(1)[0])
        )
        self.max_workers = max_workers
        self.chunk_size = chunk_size
        self.retain_trials = retain_trials
        self.max_retained_trials = max_retained_trials
        self.variance_reduction = variance_reduction or VarianceReductionConfig()
        self.guardrails = guardrails or GuardrailConfig()
        self.tables = tables or load_policy_tables()
        self.time_budget = time_budget
        self.gap_analysis = gap_analysis
        self.gap_config = gap_config or gaps.GapAnalysisConfig()
        self.optimal_age_search = optimal_age_search
        self.ltc_impact_analysis = ltc_impact_analysis

    def _chunks(self, num_trials: int) -> list[tuple[int, int]]:
        size = self.chunk_size or max(2, -(-num_trials // (self.max_workers * 4)))
        if self.variance_reduction.antithetic and size % 2:
            size += 1  # Keep antithetic pairs in one chunk
        return [(start, min(start + size, num_trials)) for start in range(0, num_trials, size)]

    def _check(self, cancel_token: Optional[CancellationToken], deadline: Optional[float], completed: int) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            raise SimulationCancelled(f"Simulation cancelled after {completed} trials", completed)
        if deadline is not None and time.monotonic() > deadline:
            raise SimulationTimeout(
                f"Simulation exceeded its time budget of {self.time_budget:.1f}s after {completed} trials",
                completed,
            )

    def run_trials(
        self,
        params: SimulationParameters,
        num_trials: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        deadline: Optional[float] = None,
        retain: bool = False,
        ltc_impact_analysis: Optional[bool] = None
    ) -> tuple[list[TrialOutcome], list[tuple[int, str]]]:
        """
        Run a batch of trials and return (outcomes, excluded) ordered by trial index.

        Raises:
            SimulationCancelled: When ``cancel_token`` is set mid-batch
            SimulationTimeout: When ``deadline`` passes mid-batch
        """
        num_trials = num_trials or self.num_simulations
        validate_iterations(num_trials)
        settings = TrialSettings(
            params=params,
            num_trials=num_trials,
            seed=self.random_seed,
            tables=self.tables,
            variance_reduction=self.variance_reduction,
            guardrails=self.guardrails,
            ltc_impact_analysis=self.ltc_impact_analysis if ltc_impact_analysis is None else ltc_impact_analysis,
            retain_until=min(self.max_retained_trials, num_trials) if retain else 0,
        )
        chunks = self._chunks(num_trials)
        results = {}

        if self.max_workers == 1:
            completed = 0
            for start, stop in chunks:
                self._check(cancel_token, deadline, completed)
                results[start] = _run_chunk(settings, start, stop, cancel_token, deadline)
                completed += stop - start
            self._check(cancel_token, deadline, completed)
        else:
            self._run_parallel(settings, chunks, results, cancel_token, deadline)

        outcomes, excluded = [], []
        for start in sorted(results):
            outcomes.extend(results[start].outcomes)
            excluded.extend(results[start].excluded)
        return outcomes, excluded

    def _run_parallel(self, settings, chunks, results, cancel_token, deadline) -> None:
        completed = 0
        with ProcessPoolExecutor(max_workers=self.max_workers) as executor:
            pending = {
                executor.submit(_run_chunk, settings, start, stop): (start, stop)
                for start, stop in chunks
            }
            try:
                while pending:
                    done, _ = wait(pending, timeout=0.1, return_when=FIRST_COMPLETED)
                    for future in done:
                        start, stop = pending.pop(future)
                        results[start] = future.result()
                        completed += stop - start
                    self._check(cancel_token, deadline, completed)
            except SimulationError:
                executor.shutdown(wait=False, cancel_futures=True)
                raise

    def run(self, params: SimulationParameters, cancel_token: Optional[CancellationToken] = None) -> AggregateResult:
        """
        Run the full simulation for a household.

        Args:
            params: Household parameters
            cancel_token: Optional cooperative cancellation flag

        Returns:
            AggregateResult with gap analysis and, if requested, retained traces
        """
        params.validate_against(self.tables)
        started = time.monotonic()
        deadline = started + self.time_budget if self.time_budget is not None else None
        logger.info(
            "Running %d trials (seed=%d, workers=%d, tables=%s)",
            self.num_simulations, self.random_seed, self.max_workers, self.tables.version,
        )

        outcomes, excluded = self.run_trials(params, cancel_token=cancel_token, deadline=deadline,
                                             retain=self.retain_trials)
        for trial_index, detail in excluded:
            logger.warning("Excluded trial %d: %s", trial_index, detail)
        if not outcomes:
            raise SimulationError(f"All {self.num_simulations} trials failed numerically")

        result = AggregationEngine(params.retirement_age).aggregate(outcomes, excluded_trials=len(excluded))
        result.seed = self.random_seed
        result.tables_version = self.tables.version

        if self.gap_analysis or self.optimal_age_search:
            def simulate(candidate: SimulationParameters) -> float:
                self._check(cancel_token, deadline, self.num_simulations)
                trial_outcomes, _ = self.run_trials(
                    candidate,
                    num_trials=self.gap_config.analysis_iterations,
                    cancel_token=cancel_token,
                    deadline=deadline,
                    ltc_impact_analysis=False,
                )
                if not trial_outcomes:
                    return 0.0
                return sum(o.success for o in trial_outcomes) / len(trial_outcomes)

            baseline = None
            if self.gap_analysis and result.success_probability < self.gap_config.target_success:
                baseline = simulate(params)
                result.gap_analysis = gaps.analyze_gaps(params, simulate, self.gap_config, baseline_success=baseline)
            if self.optimal_age_search:
                result.optimal_retirement_age = gaps.find_optimal_retirement_age(
                    params, simulate, self.gap_config, success_at_desired=baseline
                )

        if self.retain_trials:
            result.trials = [o for o in outcomes if o.cash_flows is not None]

        result.elapsed_seconds = time.monotonic() - started
        logger.info(
            "Simulation finished: success=%.4f, excluded=%d, %.2fs",
            result.success_probability, result.excluded_trials, result.elapsed_seconds,
        )
        return result


def run_retirement_simulation(
    params: SimulationParameters,
    iterations: int = 1000,
    seed: Optional[int] = None,
    verbose: bool = False,
    cancel_token: Optional[CancellationToken] = None,
    time_budget: Optional[float] = None,
    **options
) -> AggregateResult:
    """
    Request/response entry point.

    ``options`` are passed to MonteCarloSimulator (e.g. ``max_workers``,
    ``variance_reduction``, ``gap_analysis``).
    """
    simulator = MonteCarloSimulator(
        num_simulations=iterations,
        random_seed=seed,
        retain_trials=verbose,
        time_budget=time_budget,
        **options,
    )
    return simulator.run(params, cancel_token=cancel_token)
