"""
Tests for guardrail spending and tax-aware withdrawals.
"""
import pytest

from viability.simulation.parameters import AssetBuckets
from viability.simulation.taxes import MedicareSurchargeTracker, TaxCalculator, TaxConfig
from viability.simulation.withdrawal import (
    GuardrailConfig,
    WithdrawalStrategy,
    source_withdrawal,
)


def make_strategy(tables, config=None, initial_rate=None, inflation_rate=0.02, pre_retirement_income=0.0):
    return WithdrawalStrategy(
        TaxCalculator(tables, TaxConfig()),
        MedicareSurchargeTracker(tables, pre_retirement_income),
        config=config,
        initial_rate=initial_rate,
        inflation_rate=inflation_rate,
    )


class TestSourceWithdrawal:
    """Tests for bucket ordering and basis tracking."""

    def make_buckets(self):
        return AssetBuckets(tax_deferred=100000, tax_free=20000, taxable=50000, taxable_basis=30000, cash=10000)

    def test_cash_then_taxable(self):
        buckets = self.make_buckets()
        drawn, gains, ordinary, shortfall = source_withdrawal(buckets, 40000)
        assert drawn == {"cash": 10000, "taxable": 30000}
        assert gains == pytest.approx(12000)
        assert ordinary == 0
        assert shortfall == 0
        assert buckets.taxable == pytest.approx(20000)
        assert buckets.taxable_basis == pytest.approx(12000)

    def test_deferred_draw_is_ordinary_income(self):
        buckets = self.make_buckets()
        _, _, ordinary, _ = source_withdrawal(buckets, 100000)
        assert ordinary == pytest.approx(40000)
        assert buckets.tax_free == 20000

    def test_shortfall_when_exhausted(self):
        buckets = self.make_buckets()
        drawn, _, ordinary, shortfall = source_withdrawal(buckets, 200000)
        assert shortfall == pytest.approx(20000)
        assert ordinary == pytest.approx(100000)
        assert buckets.total == 0
        assert sum(drawn.values()) == pytest.approx(180000)

    def test_nothing_to_draw(self):
        buckets = self.make_buckets()
        drawn, gains, ordinary, shortfall = source_withdrawal(buckets, 0)
        assert drawn == {}
        assert buckets.total == pytest.approx(180000)


class TestGuardrails:
    """Tests for Guyton-Klinger spending adjustments."""

    def test_first_year_sets_initial_rate(self, tables):
        strategy = make_strategy(tables)
        assert strategy.spending(60000, 1_000_000, 20000) == 60000
        assert strategy.state.initial_rate == pytest.approx(0.04)

    def test_explicit_initial_rate(self, tables):
        strategy = make_strategy(tables, initial_rate=0.05)
        strategy.spending(60000, 1_000_000, 0)
        assert strategy.state.initial_rate == 0.05

    def test_cut_when_rate_too_high(self, tables):
        strategy = make_strategy(tables)
        strategy.spending(60000, 1_000_000, 20000)
        spending = strategy.spending(61200, 500000, 20000, previous_return=0.05)
        assert spending == pytest.approx(61200 * 0.9)
        assert strategy.state.cuts == 1

    def test_raise_when_rate_low(self, tables):
        strategy = make_strategy(tables)
        strategy.spending(60000, 1_000_000, 20000)
        spending = strategy.spending(61200, 2_000_000, 20000, previous_return=0.05)
        assert spending == pytest.approx(61200 * 1.1)
        assert strategy.state.raises == 1
        assert strategy.state.adjustments == 1

    def test_no_change_inside_band(self, tables):
        strategy = make_strategy(tables)
        strategy.spending(60000, 1_000_000, 20000)
        assert strategy.spending(61200, 1_000_000, 20000, previous_return=0.05) == pytest.approx(61200)
        assert strategy.state.adjustments == 0

    def test_skip_inflation_after_loss(self, tables):
        strategy = make_strategy(tables)
        strategy.spending(60000, 1_000_000, 20000)
        assert strategy.spending(61200, 1_000_000, 20000, previous_return=-0.10) == pytest.approx(60000)

    def test_essential_floor(self, tables):
        """Repeated cuts never take spending below 70% of the baseline."""
        strategy = make_strategy(tables, inflation_rate=0.0)
        strategy.spending(60000, 1_000_000, 0)
        for _ in range(10):
            spending = strategy.spending(60000, 100000, 0, previous_return=0.01)
            assert spending >= 0.7 * 60000 - 1e-9
        assert spending == pytest.approx(42000)

    def test_disabled_follows_baseline(self, tables):
        strategy = make_strategy(tables, config=GuardrailConfig(enabled=False))
        strategy.spending(60000, 1_000_000, 0)
        assert strategy.spending(61200, 100000, 0, previous_return=0.01) == 61200
        assert strategy.state.adjustments == 0

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            GuardrailConfig(adjustment=1.5)
        with pytest.raises(ValueError):
            GuardrailConfig(essential_floor=1.2)


class TestFunding:
    """Tests for grossing up draws for taxes."""

    def test_cash_need_without_tax(self, tables):
        strategy = make_strategy(tables)
        buckets = AssetBuckets(cash=100000)
        result = strategy.fund(buckets, 30000)
        assert result.gross_draw == pytest.approx(30000)
        assert result.taxes_paid == 0
        assert buckets.cash == pytest.approx(70000)

    def test_deferred_draw_grossed_up(self, tables):
        """The net of a tax-deferred draw covers the need."""
        strategy = make_strategy(tables)
        buckets = AssetBuckets(tax_deferred=500000)
        result = strategy.fund(buckets, 60000)
        assert result.taxes_paid > 0
        assert result.gross_draw - result.taxes_paid == pytest.approx(60000, abs=0.05)
        assert buckets.tax_deferred == pytest.approx(500000 - result.gross_draw)
        assert result.ordinary_from_deferred == pytest.approx(result.gross_draw)

    def test_surplus_deposited_to_cash(self, tables):
        strategy = make_strategy(tables)
        buckets = AssetBuckets(tax_deferred=100000)
        result = strategy.fund(buckets, -20000, other_ordinary_income=60000)
        assert result.gross_draw == 0
        assert result.deposit == pytest.approx(20000 - result.taxes_paid)
        assert buckets.cash == pytest.approx(result.deposit)

    def test_shortfall_reported(self, tables):
        strategy = make_strategy(tables)
        buckets = AssetBuckets(cash=10000)
        result = strategy.fund(buckets, 50000)
        assert result.shortfall == pytest.approx(40000)
        assert buckets.total == 0

    def test_records_magi_for_lookback(self, tables):
        strategy = make_strategy(tables)
        buckets = AssetBuckets(tax_deferred=500000)
        result = strategy.fund(buckets, 40000)
        assert strategy.surcharge_tracker.history[-1] == pytest.approx(result.taxes.modified_agi)

    def test_surcharge_from_working_income(self, tables):
        """High pre-retirement income raises the first Medicare years' cost."""
        low = make_strategy(tables, pre_retirement_income=50000)
        high = make_strategy(tables, pre_retirement_income=400000)
        low_result = low.fund(AssetBuckets(cash=100000), 30000, medicare_members=1)
        high_result = high.fund(AssetBuckets(cash=100000), 30000, medicare_members=1)
        assert low_result.taxes.medicare_surcharge == 0
        assert high_result.taxes.medicare_surcharge > 0
        assert high_result.gross_draw > low_result.gross_draw


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
