"""
Tests for the Monte Carlo engine.
"""
import logging

import numpy as np
import pytest

from viability.analysis.aggregation import AggregationEngine
from viability.analysis.gap_analysis import GapAnalysisConfig
from viability.simulation import (
    CancellationToken,
    CashFlowProjector,
    GuardrailConfig,
    MonteCarloSimulator,
    SimulationCancelled,
    SimulationError,
    SimulationTimeout,
    TrialNumericalError,
    ValidationError,
    VarianceReductionConfig,
    run_retirement_simulation,
)

QUICK = dict(gap_analysis=False, optimal_age_search=False, ltc_impact_analysis=False)


def quick_simulator(num_simulations=40, random_seed=42, **options):
    settings = dict(QUICK)
    settings.update(options)
    return MonteCarloSimulator(num_simulations=num_simulations, random_seed=random_seed, **settings)


class CancelAfter(CancellationToken):
    """Token that reports cancellation after a number of checks."""

    def __init__(self, checks: int):
        super().__init__()
        self.remaining = checks

    @property
    def cancelled(self) -> bool:
        self.remaining -= 1
        return self.remaining < 0 or super().cancelled


class TestSimulatorSetup:
    """Tests for simulator configuration."""

    def test_defaults(self):
        simulator = MonteCarloSimulator()
        assert simulator.num_simulations == 1000
        assert simulator.max_workers == 1
        assert simulator.variance_reduction.antithetic

    def test_seed_drawn_when_missing(self):
        assert isinstance(MonteCarloSimulator(random_seed=None).random_seed, int)

    @pytest.mark.parametrize("iterations", [0, -10])
    def test_rejects_bad_iterations(self, iterations):
        with pytest.raises(ValidationError):
            MonteCarloSimulator(num_simulations=iterations)

    def test_rejects_bad_workers(self):
        with pytest.raises(ValueError):
            MonteCarloSimulator(max_workers=0)

    def test_chunks_keep_pairs_together(self):
        simulator = MonteCarloSimulator(num_simulations=30, chunk_size=5)
        chunks = simulator._chunks(30)
        assert all(start % 2 == 0 for start, _ in chunks)
        assert chunks[-1][1] == 30

    def test_invalid_params_fail_before_trials(self, retiree_params, tables):
        params = retiree_params.with_changes(allocation=(0.5, 0.5))
        with pytest.raises(ValidationError):
            quick_simulator().run(params)


class TestResults:
    """Tests for the aggregate result of a run."""

    def test_probability_is_exact_ratio(self, retiree_params):
        result = quick_simulator().run(retiree_params)
        assert 0.0 <= result.success_probability <= 1.0
        assert result.success_probability == result.successful_trials / result.total_trials
        assert result.total_trials == 40
        assert result.excluded_trials == 0

    def test_metadata(self, retiree_params, tables):
        result = quick_simulator(random_seed=7).run(retiree_params)
        assert result.seed == 7
        assert result.tables_version == tables.version
        assert result.iterations == 40
        assert result.elapsed_seconds >= 0

    def test_percentile_bands_start_at_current_age(self, retiree_params):
        result = quick_simulator().run(retiree_params)
        assert result.percentile_bands.ages[0] == 75
        assert result.percentile_bands.trials_at_age[0] == 40

    def test_depleted_households_stay_in_bands(self, retiree_params):
        """Bands cover every household alive at an age, broke or not."""
        params = retiree_params.with_changes(annual_retirement_expenses=90000)
        outcomes, _ = quick_simulator(num_simulations=60, random_seed=3).run_trials(params)
        bands = AggregationEngine(params.retirement_age).aggregate(outcomes).percentile_bands
        alive = [sum(o.death_age > age for o in outcomes) for age in bands.ages]
        assert list(bands.trials_at_age) == alive
        assert any(not o.success for o in outcomes)
        assert np.min(bands.band(5)) == 0

    def test_control_variate_estimate(self, retiree_params):
        result = quick_simulator().run(retiree_params)
        assert result.success_probability_cv is None or 0 <= result.success_probability_cv <= 1

    def test_ltc_impact_analysis(self, retiree_params):
        result = quick_simulator(num_simulations=60, ltc_impact_analysis=True).run(retiree_params)
        stats = result.ltc_stats
        assert 0 <= stats.incidence_rate <= 1
        if stats.incidence_rate > 0:
            assert stats.success_delta is not None
            assert stats.success_delta >= 0


class TestReproducibility:
    """Same seed and inputs, same answer."""

    def test_repeat_runs_match(self, retiree_params):
        first = quick_simulator(random_seed=123).run(retiree_params)
        second = quick_simulator(random_seed=123).run(retiree_params)
        assert first.success_probability == second.success_probability
        assert first.median_ending_balance == second.median_ending_balance
        np.testing.assert_array_equal(first.percentile_bands.values, second.percentile_bands.values)

    def test_chunking_does_not_change_result(self, retiree_params):
        whole = quick_simulator(random_seed=5).run(retiree_params)
        chunked = quick_simulator(random_seed=5, chunk_size=6).run(retiree_params)
        assert whole.success_probability == chunked.success_probability
        assert whole.average_ending_balance == pytest.approx(chunked.average_ending_balance)

    def test_parallel_matches_sequential(self, retiree_params):
        sequential = quick_simulator(random_seed=11).run(retiree_params)
        parallel = quick_simulator(random_seed=11, max_workers=2, chunk_size=10).run(retiree_params)
        assert parallel.success_probability == sequential.success_probability
        assert parallel.median_ending_balance == pytest.approx(sequential.median_ending_balance)

    def test_regression_baseline(self, regression_params):
        """Mid-career saver at 1,000 trials reproduces exactly."""
        first = quick_simulator(num_simulations=1000, random_seed=20240101).run(regression_params)
        second = quick_simulator(num_simulations=1000, random_seed=20240101).run(regression_params)
        assert first.success_probability == second.success_probability
        assert first.median_ending_balance == second.median_ending_balance
        assert 0 < first.success_probability <= 1


class TestVarianceReduction:
    """Antithetic pairs reduce estimator spread."""

    @pytest.fixture
    def borderline_params(self, retiree_params):
        return retiree_params.with_changes(annual_retirement_expenses=60000)

    def test_antithetic_pairs_negatively_correlated(self, borderline_params):
        simulator = quick_simulator(
            num_simulations=400,
            random_seed=99,
            guardrails=GuardrailConfig(enabled=False),
            variance_reduction=VarianceReductionConfig(latin_hypercube=False, control_variate=False),
        )
        outcomes, _ = simulator.run_trials(borderline_params)
        success = np.array([o.success for o in outcomes], dtype=float)
        primary, mirror = success[0::2], success[1::2]
        assert np.corrcoef(primary, mirror)[0, 1] < 0

    def test_antithetic_batches_spread_less(self, borderline_params):
        def batch_estimates(antithetic: bool) -> list[float]:
            config = VarianceReductionConfig(antithetic=antithetic, latin_hypercube=False, control_variate=False)
            estimates = []
            for seed in range(30):
                simulator = quick_simulator(
                    num_simulations=40, random_seed=1000 + seed,
                    guardrails=GuardrailConfig(enabled=False), variance_reduction=config,
                )
                outcomes, _ = simulator.run_trials(borderline_params)
                estimates.append(np.mean([o.success for o in outcomes]))
            return estimates

        assert np.std(batch_estimates(True)) <= np.std(batch_estimates(False))


class TestMonotonicity:
    """Better plans never look worse on common random numbers."""

    def success(self, params, seed=31):
        simulator = quick_simulator(num_simulations=200, random_seed=seed, guardrails=GuardrailConfig(enabled=False))
        return simulator.run(params).success_probability

    def test_more_savings(self, regression_params):
        more = regression_params.with_changes(annual_savings=35000)
        assert self.success(more) >= self.success(regression_params)

    def test_later_retirement(self, regression_params):
        later = regression_params.with_changes(retirement_age=68)
        assert self.success(later) >= self.success(regression_params)

    def test_higher_expenses(self, retiree_params):
        richer = retiree_params.with_changes(annual_retirement_expenses=45000)
        poorer = retiree_params.with_changes(annual_retirement_expenses=70000)
        assert self.success(richer) >= self.success(retiree_params) >= self.success(poorer)


class TestCancellationAndTimeout:
    """Tests for cooperative stopping."""

    def test_cancelled_before_start(self, retiree_params):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(SimulationCancelled) as excinfo:
            quick_simulator().run(retiree_params, cancel_token=token)
        assert excinfo.value.completed_trials == 0

    def test_cancelled_mid_batch(self, retiree_params):
        with pytest.raises(SimulationCancelled) as excinfo:
            quick_simulator(chunk_size=10).run(retiree_params, cancel_token=CancelAfter(15))
        assert excinfo.value.completed_trials < 40

    def test_cancel_is_a_simulation_error(self, retiree_params):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(SimulationError):
            quick_simulator().run(retiree_params, cancel_token=token)

    def test_timeout(self, retiree_params):
        with pytest.raises(SimulationTimeout):
            quick_simulator(time_budget=1e-9).run(retiree_params)

    def test_timeout_is_not_a_result(self, retiree_params):
        with pytest.raises(SimulationTimeout):
            run_retirement_simulation(retiree_params, iterations=40, seed=1, time_budget=1e-9, **QUICK)

    def test_rejects_bad_budget(self):
        with pytest.raises(ValueError):
            MonteCarloSimulator(time_budget=0)


class TestExclusion:
    """Numerically failed trials are dropped and counted."""

    def test_failed_trial_excluded(self, retiree_params, monkeypatch, caplog):
        original = CashFlowProjector.project

        def flaky(self, scenario, record_trace=False, include_ltc=True):
            if scenario.trial_index == 3:
                raise TrialNumericalError(3, "injected overflow")
            return original(self, scenario, record_trace, include_ltc)

        monkeypatch.setattr(CashFlowProjector, "project", flaky)
        with caplog.at_level(logging.WARNING):
            result = quick_simulator(num_simulations=20).run(retiree_params)
        assert result.excluded_trials == 1
        assert result.total_trials == 19
        assert result.iterations == 20
        assert "Excluded trial 3" in caplog.text

    def test_all_trials_failed(self, retiree_params, monkeypatch):
        def broken(self, scenario, record_trace=False, include_ltc=True):
            raise TrialNumericalError(scenario.trial_index, "nan")

        monkeypatch.setattr(CashFlowProjector, "project", broken)
        with pytest.raises(SimulationError):
            quick_simulator(num_simulations=6).run(retiree_params)


class TestEntryPoint:
    """Tests for run_retirement_simulation."""

    def test_verbose_retains_trials(self, retiree_params):
        result = run_retirement_simulation(retiree_params, iterations=20, seed=3, verbose=True, **QUICK)
        assert result.trials
        assert all(trial.cash_flows for trial in result.trials)
        assert [t.trial_index for t in result.trials] == sorted(t.trial_index for t in result.trials)

    def test_retention_capped(self, retiree_params):
        result = run_retirement_simulation(
            retiree_params, iterations=20, seed=3, verbose=True, max_retained_trials=5, **QUICK
        )
        assert len(result.trials) == 5

    def test_not_verbose(self, retiree_params):
        result = run_retirement_simulation(retiree_params, iterations=10, seed=3, **QUICK)
        assert result.trials is None

    def test_gap_analysis_and_age_search(self, regression_params):
        result = run_retirement_simulation(
            regression_params,
            iterations=30,
            seed=8,
            gap_config=GapAnalysisConfig(target_success=0.99, analysis_iterations=20),
            ltc_impact_analysis=False,
        )
        assert isinstance(result.gap_analysis, list)
        for factor in result.gap_analysis:
            assert factor.improvement_points > 0
        assert result.optimal_retirement_age is not None
        assert result.optimal_retirement_age.desired_age == 67


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
