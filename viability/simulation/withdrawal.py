"""
Retirement withdrawals: Guyton-Klinger guardrails for the spending level and
tax-aware sourcing across the asset buckets.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from viability.simulation.parameters import AssetBuckets
from viability.simulation.taxes import MedicareSurchargeTracker, TaxBreakdown, TaxCalculator

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_RATE = 0.04
GROSS_UP_PASSES = 20
GROSS_UP_TOLERANCE = 0.01

BUCKET_ORDER = ("cash", "taxable", "tax_deferred", "tax_free")


@dataclass(frozen=True)
class GuardrailConfig:
    """Guyton-Klinger guardrail settings."""
    upper_trigger: float = 0.20  # Cut when rate exceeds initial rate by 20%
    lower_trigger: float = 0.20  # Raise when rate falls 20% below initial rate
    adjustment: float = 0.10
    essential_floor: float = 0.70  # Share of the inflation-adjusted baseline
    skip_inflation_after_loss: bool = True
    enabled: bool = True

    def __post_init__(self):
        if self.upper_trigger < 0 or not 0 <= self.lower_trigger < 1:
            raise ValueError("Guardrail triggers must be non-negative (lower below 1)")
        if not 0 <= self.adjustment < 1:
            raise ValueError("Guardrail adjustment must be between 0 and 1")
        if not 0 <= self.essential_floor <= 1:
            raise ValueError("Essential floor must be between 0 and 1")


@dataclass
class GuardrailState:
    """Per-trial guardrail state carried from one year to the next."""
    initial_rate: Optional[float] = None
    withdrawal: float = 0.0
    cuts: int = 0
    raises: int = 0

    @property
    def adjustments(self) -> int:
        return self.cuts + self.raises


@dataclass
class WithdrawalResult:
    """Outcome of funding one year's cash need from the buckets."""
    gross_draw: float = 0.0
    deposit: float = 0.0
    taxes: TaxBreakdown = field(default_factory=TaxBreakdown)
    realized_gains: float = 0.0
    ordinary_from_deferred: float = 0.0
    shortfall: float = 0.0
    sources: dict = field(default_factory=dict)

    @property
    def taxes_paid(self) -> float:
        return self.taxes.total


def source_withdrawal(buckets: AssetBuckets, amount: float) -> tuple[dict, float, float, float]:
    """
    Draw ``amount`` from the buckets in tax-efficient order.

    Cash first, then the taxable account (realizing gain pro rata to the
    tracked basis), then tax-deferred, then tax-free. Mutates ``buckets``.

    Returns:
        Tuple of (drawn per bucket, realized gain, ordinary income, shortfall)
    """
    remaining = max(amount, 0.0)
    drawn = {}
    realized_gain = 0.0
    ordinary = 0.0

    for name in BUCKET_ORDER:
        if remaining <= 0:
            break
        available = getattr(buckets, name)
        take = min(available, remaining)
        if take <= 0:
            continue

        if name == "taxable":
            gain_ratio = max(0.0, (available - buckets.taxable_basis) / available)
            realized_gain += take * gain_ratio
            buckets.taxable_basis = max(0.0, buckets.taxable_basis * (1 - take / available))
        elif name == "tax_deferred":
            ordinary += take

        setattr(buckets, name, available - take)
        drawn[name] = take
        remaining -= take

    return drawn, realized_gain, ordinary, max(remaining, 0.0)


class WithdrawalStrategy:
    """
    Per-trial withdrawal logic.

    Holds the trial's guardrail state and Medicare lookback window; a new
    instance is created for every trial and never shared.
    """

    def __init__(
        self,
        tax_calculator: TaxCalculator,
        surcharge_tracker: MedicareSurchargeTracker,
        config: Optional[GuardrailConfig] = None,
        initial_rate: Optional[float] = None,
        inflation_rate: float = 0.025
    ):
        self.taxes = tax_calculator
        self.surcharge_tracker = surcharge_tracker
        self.config = config or GuardrailConfig()
        self.target_initial_rate = initial_rate
        self.inflation_rate = inflation_rate
        self.state = GuardrailState()

    def spending(
        self,
        baseline: float,
        balance: float,
        guaranteed_income: float,
        previous_return: Optional[float] = None
    ) -> float:
        """
        Guardrail-managed spending for this retirement year.

        Args:
            baseline: Planned spending inflated to this year
            balance: Portfolio balance after this year's returns
            guaranteed_income: Income not drawn from the portfolio
            previous_return: Last year's portfolio return (None in the first year)

        Returns:
            Spending for the year, never below the essential floor
        """
        state = self.state
        floor = self.config.essential_floor * baseline

        if state.initial_rate is None:
            state.withdrawal = baseline
            observed = (baseline - guaranteed_income) / balance if balance > 0 else 0.0
            rate = self.target_initial_rate or observed
            state.initial_rate = rate if rate > 0 else DEFAULT_INITIAL_RATE
            return state.withdrawal

        if not self.config.enabled:
            state.withdrawal = baseline
            return baseline

        withdrawal = state.withdrawal
        if not (self.config.skip_inflation_after_loss and previous_return is not None and previous_return < 0):
            withdrawal *= 1 + self.inflation_rate

        portfolio_need = withdrawal - guaranteed_income
        rate = portfolio_need / balance if balance > 0 else float("inf")
        if portfolio_need > 0 and rate > state.initial_rate * (1 + self.config.upper_trigger):
            withdrawal *= 1 - self.config.adjustment
            state.cuts += 1
        elif 0 < rate < state.initial_rate * (1 - self.config.lower_trigger):
            withdrawal *= 1 + self.config.adjustment
            state.raises += 1

        state.withdrawal = max(withdrawal, floor)
        return state.withdrawal

    def fund(
        self,
        buckets: AssetBuckets,
        need: float,
        other_ordinary_income: float = 0.0,
        social_security: float = 0.0,
        filing_status: str = "single",
        index: float = 1.0,
        seniors: int = 0,
        medicare_members: int = 0
    ) -> WithdrawalResult:
        """
        Cover ``need`` (outflows minus income, may be negative) plus the
        year's taxes from the buckets.

        Taxes depend on what is drawn, so the draw is grossed up over a few
        passes on a scratch copy before it is applied. A shortfall is
        reported in the result, never raised.
        """
        def tax_bill(ordinary: float, gains: float) -> TaxBreakdown:
            breakdown = self.taxes.calculate(
                other_ordinary_income + ordinary, gains, social_security, filing_status, index, seniors
            )
            lookback_income = None if self.surcharge_tracker.lookback_years > 0 else breakdown.modified_agi
            breakdown.medicare_surcharge = self.surcharge_tracker.surcharge(
                filing_status, medicare_members, index, income=lookback_income
            )
            return breakdown

        breakdown = tax_bill(0.0, 0.0)
        draw = max(need + breakdown.total, 0.0)
        for _ in range(GROSS_UP_PASSES):
            _, gains, ordinary, _ = source_withdrawal(buckets.copy(), draw)
            target = max(need + tax_bill(ordinary, gains).total, 0.0)
            converged = abs(target - draw) < GROSS_UP_TOLERANCE
            draw = target
            if converged:
                break

        drawn, gains, ordinary, shortfall = source_withdrawal(buckets, draw)
        breakdown = tax_bill(ordinary, gains)

        deposit = max(-(need + breakdown.total), 0.0)
        if deposit > 0:
            buckets.cash += deposit

        self.surcharge_tracker.record(breakdown.modified_agi)
        return WithdrawalResult(
            gross_draw=draw - shortfall,
            deposit=deposit,
            taxes=breakdown,
            realized_gains=gains,
            ordinary_from_deferred=ordinary,
            shortfall=shortfall,
            sources=drawn,
        )
