"""
Annual tax calculation for retirement cash flows.

Covers:
- Federal ordinary-income brackets with standard and senior deductions
- Long-term capital gains stacked on top of ordinary income
- Provisional-income taxation of Social Security benefits
- State income tax by state of residence
- Medicare income surcharge from a lookback over prior-year income
"""
import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

from viability.data.tables import Brackets, PolicyTables

logger = logging.getLogger(__name__)


@dataclass
class TaxConfig:
    """Household tax settings."""
    filing_status: str = "single"
    state: Optional[str] = None
    flat_tax_rate: Optional[float] = None  # Replaces federal and state brackets

    def __post_init__(self):
        if self.filing_status not in ("single", "married"):
            raise ValueError("Filing status must be 'single' or 'married'")
        if self.flat_tax_rate is not None and not 0 <= self.flat_tax_rate <= 1:
            raise ValueError("Flat tax rate must be between 0 and 1")


@dataclass
class TaxBreakdown:
    """Tax owed for one year."""
    federal: float = 0.0
    capital_gains: float = 0.0
    state: float = 0.0
    medicare_surcharge: float = 0.0
    taxable_social_security: float = 0.0
    modified_agi: float = 0.0

    @property
    def income_tax(self) -> float:
        return self.federal + self.capital_gains + self.state

    @property
    def total(self) -> float:
        return self.income_tax + self.medicare_surcharge


def bracket_tax(income: float, brackets: Brackets, index: float = 1.0) -> float:
    """Progressive tax on ``income`` with thresholds scaled by ``index``."""
    if income <= 0 or not brackets:
        return 0.0
    tax = 0.0
    for i, (threshold, rate) in enumerate(brackets):
        lower = threshold * index
        if income <= lower:
            break
        upper = brackets[i + 1][0] * index if i + 1 < len(brackets) else float("inf")
        tax += (min(income, upper) - lower) * rate
    return tax


def stacked_gains_tax(ordinary_taxable: float, gains: float, brackets: Brackets, index: float = 1.0) -> float:
    """Capital-gains tax where gains fill the brackets above ordinary income."""
    if gains <= 0:
        return 0.0
    start = max(ordinary_taxable, 0.0)
    return bracket_tax(start + gains, brackets, index) - bracket_tax(start, brackets, index)


class TaxCalculator:
    """Computes a household's annual tax bill from the policy tables."""

    def __init__(self, tables: PolicyTables, config: TaxConfig):
        self.tables = tables
        self.config = config
        self.state_table = tables.state_table(config.state)
        if config.state and self.state_table is None:
            logger.debug(
                "No bracket table for state %s; using flat rate %.3f",
                config.state, tables.default_state_rate,
            )

    def taxable_social_security(
        self,
        other_income: float,
        benefits: float,
        filing_status: str
    ) -> float:
        """
        Portion of Social Security benefits subject to income tax.

        The provisional-income thresholds are fixed in nominal dollars by
        statute and are not indexed.
        """
        if benefits <= 0:
            return 0.0
        first, second = self.tables.social_security_thresholds[filing_status]
        provisional = other_income + 0.5 * benefits
        if provisional <= first:
            return 0.0
        if provisional <= second:
            return min(0.5 * benefits, 0.5 * (provisional - first))
        return min(
            0.85 * benefits,
            0.85 * (provisional - second) + min(0.5 * benefits, 0.5 * (second - first)),
        )

    def calculate(
        self,
        ordinary_income: float,
        capital_gains: float = 0.0,
        social_security: float = 0.0,
        filing_status: Optional[str] = None,
        index: float = 1.0,
        seniors: int = 0
    ) -> TaxBreakdown:
        """
        Income tax for one year.

        Args:
            ordinary_income: Wages, pensions and tax-deferred withdrawals
            capital_gains: Realized long-term gains
            social_security: Gross Social Security benefits received
            filing_status: Overrides the configured status (e.g. after a death)
            index: Cumulative inflation since the table base year
            seniors: Household members aged 65 or older

        Returns:
            TaxBreakdown without the Medicare surcharge
        """
        status = filing_status or self.config.filing_status
        ordinary_income = max(ordinary_income, 0.0)
        capital_gains = max(capital_gains, 0.0)
        taxable_ss = self.taxable_social_security(ordinary_income + capital_gains, social_security, status)
        magi = ordinary_income + capital_gains + taxable_ss

        if self.config.flat_tax_rate is not None:
            return TaxBreakdown(
                federal=magi * self.config.flat_tax_rate,
                taxable_social_security=taxable_ss,
                modified_agi=magi,
            )

        deduction = (self.tables.standard_deduction[status] + seniors * self.tables.senior_deduction[status]) * index
        ordinary_taxable = ordinary_income + taxable_ss - deduction
        federal = bracket_tax(ordinary_taxable, self.tables.federal_brackets[status], index)
        # Unused deduction offsets gains before the gains brackets apply
        gains_taxable = capital_gains + min(ordinary_taxable, 0.0)
        gains_tax = stacked_gains_tax(
            ordinary_taxable, gains_taxable, self.tables.capital_gains_brackets[status], index
        )

        return TaxBreakdown(
            federal=federal,
            capital_gains=gains_tax,
            state=self.state_tax(ordinary_income, capital_gains, taxable_ss, status, index),
            taxable_social_security=taxable_ss,
            modified_agi=magi,
        )

    def state_tax(
        self,
        ordinary_income: float,
        capital_gains: float,
        taxable_ss: float,
        filing_status: str,
        index: float = 1.0
    ) -> float:
        if not self.config.state:
            return 0.0
        if self.state_table is None:
            return (ordinary_income + capital_gains) * self.tables.default_state_rate
        if not self.state_table.has_income_tax:
            return 0.0
        income = ordinary_income + capital_gains
        if self.state_table.taxes_social_security:
            income += taxable_ss
        taxable = income - self.state_table.standard_deduction[filing_status] * index
        return bracket_tax(taxable, self.state_table.brackets[filing_status], index)


class MedicareSurchargeTracker:
    """
    Income-related Medicare premium surcharge.

    The surcharge for a year is set by income from ``lookback_years`` earlier;
    the window starts filled with pre-retirement income so the first retirement
    years are priced from the household's working income.
    """

    def __init__(self, tables: PolicyTables, pre_retirement_income: float, lookback_years: Optional[int] = None):
        self.tables = tables
        self.lookback_years = lookback_years if lookback_years is not None else tables.surcharge_lookback_years
        self.history = deque(
            [max(pre_retirement_income, 0.0)] * self.lookback_years,
            maxlen=max(self.lookback_years, 1),
        )

    def lookback_income(self) -> float:
        return self.history[0] if self.history else 0.0

    def surcharge(self, filing_status: str, medicare_members: int, index: float = 1.0, income: Optional[float] = None) -> float:
        """
        Annual surcharge for the household.

        Args:
            filing_status: Filing status in the lookback year
            medicare_members: Household members enrolled in Medicare
            index: Cumulative inflation applied to thresholds and premiums
            income: Overrides the lookback income (used when the window is empty)
        """
        if medicare_members <= 0:
            return 0.0
        magi = self.lookback_income() if income is None else income
        base = self.tables.surcharge_base_part_b
        monthly = 0.0
        for threshold, part_b, part_d in self.tables.surcharge_brackets[filing_status]:
            if magi >= threshold * index:
                monthly = (part_b - base) + part_d
            else:
                break
        return 12 * monthly * index * medicare_members

    def record(self, magi: float) -> None:
        if self.lookback_years > 0:
            self.history.append(max(magi, 0.0))
