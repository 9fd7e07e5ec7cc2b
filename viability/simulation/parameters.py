"""
Household parameters for the retirement viability simulation.

SimulationParameters is an immutable snapshot created once per request;
AssetBuckets is the mutable per-trial account state derived from it.
"""
from dataclasses import dataclass, field, fields, replace
from typing import Optional

import numpy as np

from viability.data.tables import FILING_STATUSES, PolicyTables

# Default split of a lump-sum balance across account types when the caller
# does not supply buckets explicitly.
DEFAULT_BUCKET_SPLIT = {
    "tax_deferred": 0.60,
    "taxable": 0.25,
    "tax_free": 0.10,
    "cash": 0.05,
}

DEFAULT_SAVINGS_MIX = (0.70, 0.20, 0.10)  # tax-deferred, taxable, tax-free

BUCKET_TOLERANCE = 1.0


class ValidationError(ValueError):
    """Raised when simulation inputs are inconsistent; lists every problem."""

    def __init__(self, issues: list[tuple[str, str]]):
        self.issues = list(issues)
        details = "; ".join(f"{name}: {message}" for name, message in self.issues)
        super().__init__(f"Invalid simulation parameters: {details}")

    @property
    def fields(self) -> list[str]:
        return [name for name, _ in self.issues]


@dataclass
class AssetBuckets:
    """Account balances by tax treatment."""

    tax_deferred: float = 0.0
    tax_free: float = 0.0
    taxable: float = 0.0
    taxable_basis: float = 0.0
    cash: float = 0.0

    @classmethod
    def from_total(cls, total: float, split: Optional[dict] = None) -> "AssetBuckets":
        """Spread ``total`` over the buckets; taxable basis starts at value."""
        split = split or DEFAULT_BUCKET_SPLIT
        taxable = total * split["taxable"]
        return cls(
            tax_deferred=total * split["tax_deferred"],
            tax_free=total * split["tax_free"],
            taxable=taxable,
            taxable_basis=taxable,
            cash=total * split["cash"],
        )

    @property
    def total(self) -> float:
        return self.tax_deferred + self.tax_free + self.taxable + self.cash

    @property
    def unrealized_gain(self) -> float:
        return max(0.0, self.taxable - self.taxable_basis)

    def grow(self, invested_return: float, cash_return: float) -> None:
        """Apply one year of returns; basis is unaffected by growth."""
        self.tax_deferred = max(0.0, self.tax_deferred * (1 + invested_return))
        self.tax_free = max(0.0, self.tax_free * (1 + invested_return))
        self.taxable = max(0.0, self.taxable * (1 + invested_return))
        self.cash = max(0.0, self.cash * (1 + cash_return))
        if self.taxable_basis > self.taxable and self.taxable <= 0:
            self.taxable_basis = 0.0

    def deposit(self, amount: float, mix: tuple[float, float, float] = DEFAULT_SAVINGS_MIX) -> None:
        """Add a contribution split by ``mix`` (tax-deferred, taxable, tax-free)."""
        deferred, taxable, tax_free = mix
        self.tax_deferred += amount * deferred
        self.taxable += amount * taxable
        self.taxable_basis += amount * taxable
        self.tax_free += amount * tax_free

    def copy(self) -> "AssetBuckets":
        return replace(self)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class GuaranteedIncome:
    """A pension, annuity or other income stream starting at a given age."""

    name: str
    annual_amount: float
    start_age: int
    end_age: Optional[int] = None
    inflation_adjusted: bool = True
    taxable: bool = True

    def __post_init__(self):
        if self.annual_amount < 0:
            raise ValueError("Guaranteed income amount cannot be negative")
        if self.end_age is not None and self.end_age < self.start_age:
            raise ValueError("Guaranteed income must end after it starts")

    def is_active(self, age: int) -> bool:
        return age >= self.start_age and (self.end_age is None or age < self.end_age)


@dataclass(frozen=True)
class LTCInsurance:
    """Terms of a long-term-care insurance policy."""

    daily_benefit: float = 200.0
    benefit_period_years: float = 3.0
    elimination_days: int = 90
    annual_premium: float = 3500.0
    inflation_rider: bool = False
    rider_rate: float = 0.03
    premiums_during_claim: bool = False

    def __post_init__(self):
        if self.daily_benefit < 0:
            raise ValueError("Daily benefit cannot be negative")
        if self.benefit_period_years <= 0:
            raise ValueError("Benefit period must be positive")
        if self.elimination_days < 0:
            raise ValueError("Elimination period cannot be negative")
        if self.annual_premium < 0:
            raise ValueError("Premium cannot be negative")

    @property
    def annual_benefit_cap(self) -> float:
        return self.daily_benefit * 365


@dataclass(frozen=True)
class SimulationParameters:
    """
    Frozen snapshot of a household's retirement plan.

    Monetary inputs are in today's dollars; ages are whole years.
    ``allocation``, ``expected_returns`` and ``volatilities`` follow the asset
    classes of the market tables (stocks, bonds, cash); returns and
    volatilities default to the table assumptions when omitted.
    """

    current_age: int
    retirement_age: int
    life_expectancy: Optional[float]
    current_retirement_assets: float
    annual_retirement_expenses: float
    annual_savings: float = 0.0
    allocation: tuple = (0.60, 0.35, 0.05)
    expected_returns: Optional[tuple] = None
    volatilities: Optional[tuple] = None
    buckets: Optional[AssetBuckets] = None
    savings_growth_rate: Optional[float] = None
    savings_mix: tuple = DEFAULT_SAVINGS_MIX
    annual_income: float = 0.0
    annual_healthcare_expenses: Optional[float] = None
    healthcare_inflation_differential: float = 0.03
    inflation_rate: float = 0.025
    withdrawal_rate: Optional[float] = None
    filing_status: str = "single"
    state: Optional[str] = None
    flat_tax_rate: Optional[float] = None
    gender: str = "male"
    social_security_benefit: float = 0.0
    social_security_claim_age: int = 67
    spouse_age: Optional[int] = None
    spouse_life_expectancy: Optional[float] = None
    spouse_gender: str = "female"
    spouse_social_security_benefit: float = 0.0
    spouse_social_security_claim_age: int = 67
    part_time_income: float = 0.0
    part_time_until_age: Optional[int] = None
    guaranteed_income: tuple = ()
    ltc_insurance: Optional[LTCInsurance] = None
    ltc_inflation_rate: float = 0.04
    start_year: int = 2026

    def __post_init__(self):
        object.__setattr__(self, "allocation", tuple(float(w) for w in self.allocation))
        if self.expected_returns is not None:
            object.__setattr__(self, "expected_returns", tuple(float(r) for r in self.expected_returns))
        if self.volatilities is not None:
            object.__setattr__(self, "volatilities", tuple(float(v) for v in self.volatilities))
        object.__setattr__(self, "guaranteed_income", tuple(self.guaranteed_income))
        object.__setattr__(self, "savings_mix", tuple(self.savings_mix))
        if self.buckets is None and self.current_retirement_assets >= 0:
            object.__setattr__(self, "buckets", AssetBuckets.from_total(self.current_retirement_assets))

        issues = self.collect_issues()
        if issues:
            raise ValidationError(issues)

    @property
    def has_spouse(self) -> bool:
        return self.spouse_age is not None

    @property
    def total_assets(self) -> float:
        return self.buckets.total if self.buckets is not None else self.current_retirement_assets

    @property
    def years_to_retirement(self) -> int:
        return max(0, self.retirement_age - self.current_age)

    @property
    def spouse_age_offset(self) -> int:
        """User age minus spouse age (spouse age = user age - offset)."""
        return self.current_age - self.spouse_age if self.has_spouse else 0

    @property
    def household_filing_status(self) -> str:
        if self.has_spouse and self.filing_status == "single":
            return "married"
        return self.filing_status

    def collect_issues(self) -> list[tuple[str, str]]:
        """All consistency problems of this snapshot (empty when valid)."""
        issues = []

        if self.current_age < 0:
            issues.append(("current_age", "must not be negative"))
        if self.retirement_age < 0:
            issues.append(("retirement_age", "must not be negative"))
        elif self.retirement_age < self.current_age:
            issues.append(("retirement_age", "must not precede current_age"))

        if self.life_expectancy is None:
            issues.append(("life_expectancy", "is required to calibrate mortality"))
        elif self.life_expectancy <= self.current_age:
            issues.append(("life_expectancy", "must exceed current_age"))

        if self.has_spouse:
            if self.spouse_age < 0:
                issues.append(("spouse_age", "must not be negative"))
            if self.spouse_life_expectancy is not None and self.spouse_life_expectancy <= self.spouse_age:
                issues.append(("spouse_life_expectancy", "must exceed spouse_age"))

        if self.current_retirement_assets < 0:
            issues.append(("current_retirement_assets", "must not be negative"))
        if self.annual_savings < 0:
            issues.append(("annual_savings", "must not be negative"))
        if self.annual_retirement_expenses < 0:
            issues.append(("annual_retirement_expenses", "must not be negative"))

        weights = np.array(self.allocation)
        if np.any(weights < 0):
            issues.append(("allocation", "weights must not be negative"))
        if not np.isclose(weights.sum(), 1.0, atol=1e-6):
            issues.append(("allocation", f"weights must sum to 1, got {weights.sum():.6f}"))
        if self.expected_returns is not None and len(self.expected_returns) != len(self.allocation):
            issues.append(("expected_returns", "must have one entry per asset class"))
        if self.volatilities is not None:
            if len(self.volatilities) != len(self.allocation):
                issues.append(("volatilities", "must have one entry per asset class"))
            if any(v < 0 for v in self.volatilities):
                issues.append(("volatilities", "must not be negative"))

        if len(self.savings_mix) != 3 or not np.isclose(sum(self.savings_mix), 1.0):
            issues.append(("savings_mix", "must have three shares summing to 1"))

        if self.buckets is not None:
            if min(self.buckets.to_dict().values()) < 0:
                issues.append(("buckets", "balances must not be negative"))
            if abs(self.buckets.total - self.current_retirement_assets) > BUCKET_TOLERANCE:
                issues.append((
                    "buckets",
                    f"sum {self.buckets.total:.2f} does not match total assets "
                    f"{self.current_retirement_assets:.2f}",
                ))

        if self.filing_status not in FILING_STATUSES:
            issues.append(("filing_status", f"must be one of {FILING_STATUSES}"))
        if self.flat_tax_rate is not None and not 0 <= self.flat_tax_rate <= 1:
            issues.append(("flat_tax_rate", "must be between 0 and 1"))
        if self.withdrawal_rate is not None and not 0 < self.withdrawal_rate < 1:
            issues.append(("withdrawal_rate", "must be between 0 and 1"))
        if self.inflation_rate <= -1:
            issues.append(("inflation_rate", "must be greater than -100%"))

        for name in ("social_security_claim_age", "spouse_social_security_claim_age"):
            if not 62 <= getattr(self, name) <= 70:
                issues.append((name, "must be between 62 and 70"))

        for gender_field in ("gender", "spouse_gender"):
            if getattr(self, gender_field) not in ("male", "female"):
                issues.append((gender_field, "must be 'male' or 'female'"))

        return issues

    def validate_against(self, tables: PolicyTables) -> None:
        """Check the snapshot against the injected policy tables."""
        issues = []
        num_assets = tables.market.num_assets
        if len(self.allocation) != num_assets:
            issues.append((
                "allocation",
                f"expected {num_assets} weights for {', '.join(tables.market.asset_classes)}",
            ))
        mortality = tables.mortality
        if not mortality.rates or any(len(rates) == 0 for rates in mortality.rates.values()):
            issues.append(("mortality", "mortality table is missing"))
        if self.current_age >= mortality.max_age:
            issues.append(("current_age", f"must be below {mortality.max_age}"))
        correlation = tables.market.correlation
        if correlation.shape != (num_assets, num_assets) or not np.allclose(correlation, correlation.T):
            issues.append(("correlation", "must be a symmetric matrix matching the asset classes"))
        if issues:
            raise ValidationError(issues)

    def with_changes(self, **changes) -> "SimulationParameters":
        """Copy with some fields replaced (re-validated)."""
        if "buckets" not in changes:
            if "current_retirement_assets" in changes:
                # New total, default split
                changes["buckets"] = None
            else:
                changes["buckets"] = self.buckets.copy() if self.buckets is not None else None
        return replace(self, **changes)

    def asset_returns(self, tables: PolicyTables) -> np.ndarray:
        if self.expected_returns is not None:
            return np.array(self.expected_returns)
        return np.array(tables.market.expected_returns)

    def asset_volatilities(self, tables: PolicyTables) -> np.ndarray:
        if self.volatilities is not None:
            return np.array(self.volatilities)
        return np.array(tables.market.volatilities)


def validate_iterations(iterations: int) -> None:
    if not isinstance(iterations, (int, np.integer)) or iterations <= 0:
        raise ValidationError([("iterations", "must be a positive integer")])
