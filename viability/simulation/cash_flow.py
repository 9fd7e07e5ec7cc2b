"""
Year-by-year cash-flow projection of a single trial.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from viability.data.tables import PolicyTables, load_policy_tables
from viability.simulation.long_term_care import LongTermCareModel, LTCEvent
from viability.simulation.parameters import SimulationParameters
from viability.simulation.scenarios import TrialScenario
from viability.simulation.taxes import MedicareSurchargeTracker, TaxCalculator, TaxConfig
from viability.simulation.withdrawal import GuardrailConfig, WithdrawalStrategy, source_withdrawal

logger = logging.getLogger(__name__)

# Unfunded amounts below this are rounding noise, not a depleted portfolio
SHORTFALL_TOLERANCE = 0.5


class TrialNumericalError(ArithmeticError):
    """A trial produced a non-finite value and cannot be aggregated."""

    def __init__(self, trial_index: int, detail: str):
        self.trial_index = trial_index
        self.detail = detail
        super().__init__(f"Trial {trial_index}: {detail}")


@dataclass
class YearlyCashFlow:
    """One year of a trial's cash-flow trace (nominal dollars)."""
    year: int
    age: int
    portfolio_balance: float
    withdrawal: float = 0.0
    baseline_withdrawal: float = 0.0
    portfolio_draw: float = 0.0
    contributions: float = 0.0
    guaranteed_income: float = 0.0
    taxes_paid: float = 0.0
    ltc_cost: float = 0.0
    ltc_premium: float = 0.0
    healthcare_cost: float = 0.0
    net_cash_flow: float = 0.0


@dataclass
class TrialOutcome:
    """Result of projecting one trial."""
    trial_index: int
    success: bool
    ending_balance: float
    depletion_age: Optional[int]
    start_age: int
    death_age: int
    balances: np.ndarray  # End-of-year balance for each age walked
    guardrail_cuts: int = 0
    guardrail_raises: int = 0
    ltc_event: Optional[LTCEvent] = None
    ltc_gross_cost: float = 0.0
    ltc_net_cost: float = 0.0
    ltc_premiums: float = 0.0
    total_taxes: float = 0.0
    control_variate: float = 1.0
    success_without_ltc: Optional[bool] = None
    cash_flows: Optional[list] = field(default=None, repr=False)

    @property
    def guardrail_adjustments(self) -> int:
        return self.guardrail_cuts + self.guardrail_raises

    @property
    def had_ltc_event(self) -> bool:
        return self.ltc_event is not None

    @property
    def ages(self) -> np.ndarray:
        return np.arange(self.start_age, self.start_age + len(self.balances))


class CashFlowProjector:
    """
    Walks one trial from the current age to the household's sampled death age.

    Each year: returns are applied first, then contributions while working or
    a guardrail withdrawal in retirement, guaranteed income, expenses,
    healthcare and long-term care. A shortfall ends the trial as failed with
    the balance clamped to zero.
    """

    def __init__(
        self,
        params: SimulationParameters,
        tables: Optional[PolicyTables] = None,
        guardrails: Optional[GuardrailConfig] = None
    ):
        self.params = params
        self.tables = tables or load_policy_tables()
        self.guardrails = guardrails or GuardrailConfig()
        self.ltc_model = LongTermCareModel(params, self.tables)
        self.weights = np.array(params.allocation)

        asset_classes = self.tables.market.asset_classes
        self.cash_index = asset_classes.index("cash") if "cash" in asset_classes else None
        self.tax_base_index = (1 + params.inflation_rate) ** (params.start_year - self.tables.base_year)

        rules = self.tables.social_security
        self.user_benefit = params.social_security_benefit * rules.claiming_factor(params.social_security_claim_age)
        self.spouse_benefit = (
            params.spouse_social_security_benefit
            * rules.claiming_factor(params.spouse_social_security_claim_age)
        )
        self.savings_growth = (
            params.savings_growth_rate if params.savings_growth_rate is not None else params.inflation_rate
        )

    def _new_strategy(self) -> WithdrawalStrategy:
        params = self.params
        config = TaxConfig(
            filing_status=params.household_filing_status,
            state=params.state,
            flat_tax_rate=params.flat_tax_rate,
        )
        tracker = MedicareSurchargeTracker(self.tables, params.annual_income * self.tax_base_index)
        return WithdrawalStrategy(
            TaxCalculator(self.tables, config),
            tracker,
            config=self.guardrails,
            initial_rate=params.withdrawal_rate,
            inflation_rate=params.inflation_rate,
        )

    def social_security(self, age: int, user_alive: bool, spouse_alive: bool, index: float) -> float:
        """Household benefits in ``age``'s year; a survivor keeps the larger benefit."""
        params = self.params
        user = self.user_benefit if age >= params.social_security_claim_age else 0.0
        spouse = 0.0
        if params.has_spouse and age - params.spouse_age_offset >= params.spouse_social_security_claim_age:
            spouse = self.spouse_benefit

        if user_alive and spouse_alive:
            total = user + spouse
        elif user_alive or spouse_alive:
            total = max(user, spouse)
        else:
            total = 0.0
        return total * index

    def other_income(self, age: int, index: float) -> tuple[float, float]:
        """Part-time and guaranteed streams as (total, taxable portion)."""
        params = self.params
        total = taxable = 0.0
        if params.part_time_income > 0 and (params.part_time_until_age is None or age < params.part_time_until_age):
            amount = params.part_time_income * index
            total += amount
            taxable += amount
        for stream in params.guaranteed_income:
            if not stream.is_active(age):
                continue
            amount = stream.annual_amount * (index if stream.inflation_adjusted else 1.0)
            total += amount
            if stream.taxable:
                taxable += amount
        return total, taxable

    def healthcare(self, t: int, member_ages: list[int], index: float) -> float:
        """Healthcare cost; the differential compounds on top of general inflation only."""
        params = self.params
        growth = index * (1 + params.healthcare_inflation_differential) ** t
        if params.annual_healthcare_expenses is not None:
            return params.annual_healthcare_expenses * growth
        defaults = self.tables.healthcare
        per_person = [
            defaults["medicare_annual_cost_per_person"] if age >= defaults["medicare_age"]
            else defaults["pre_medicare_annual_cost_per_person"]
            for age in member_ages
        ]
        return sum(per_person) * growth

    def project(
        self,
        scenario: TrialScenario,
        record_trace: bool = False,
        include_ltc: bool = True
    ) -> TrialOutcome:
        """
        Project one trial.

        Args:
            scenario: Random inputs of the trial
            record_trace: Keep the YearlyCashFlow trace on the outcome
            include_ltc: Apply the scenario's LTC event (False removes the shock)

        Returns:
            TrialOutcome with balances by age and the success flag
        """
        params = self.params
        buckets = params.buckets.copy()
        strategy = self._new_strategy()
        event = scenario.ltc_event if include_ltc else None
        death_age = scenario.household_death_age

        balances = []
        trace = [] if record_trace else None
        success = True
        depletion_age = None
        totals = {"ltc_gross": 0.0, "ltc_net": 0.0, "premiums": 0.0, "taxes": 0.0}

        for t, age in enumerate(range(params.current_age, death_age)):
            index = (1 + params.inflation_rate) ** t
            tax_index = self.tax_base_index * index
            year_returns = scenario.returns[t]
            invested_return = float(self.weights @ year_returns)
            cash_return = float(year_returns[self.cash_index]) if self.cash_index is not None else invested_return

            start_balance = buckets.total
            buckets.grow(invested_return, cash_return)

            user_alive = age < scenario.user_death_age
            spouse_alive = scenario.spouse_death_age is not None and age < scenario.spouse_death_age
            member_ages = [age] if user_alive else []
            if spouse_alive:
                member_ages.append(age - params.spouse_age_offset)

            ltc_gross = event.gross_cost_at(age) if event is not None else 0.0
            ltc_net = event.net_cost_at(age) if event is not None else 0.0
            premium = self.ltc_model.premium(age, event)
            flow = YearlyCashFlow(year=params.start_year + t, age=age, portfolio_balance=0.0,
                                  ltc_cost=ltc_net, ltc_premium=premium)

            if age < params.retirement_age:
                contributions = params.annual_savings * (1 + self.savings_growth) ** t
                net = contributions - ltc_net - premium
                shortfall = 0.0
                if net >= 0:
                    buckets.deposit(net, params.savings_mix)
                else:
                    drawn, _, _, shortfall = source_withdrawal(buckets, -net)
                    flow.portfolio_draw = sum(drawn.values())
                flow.contributions = contributions
                strategy.surcharge_tracker.record(params.annual_income * tax_index)
            else:
                social_security = self.social_security(age, user_alive, spouse_alive, index)
                other, other_taxable = self.other_income(age, index)
                guaranteed = social_security + other

                baseline = params.annual_retirement_expenses * index
                spending = strategy.spending(baseline, buckets.total, guaranteed, invested_return)
                healthcare = self.healthcare(t, member_ages, index)
                need = spending + healthcare + ltc_net + premium - guaranteed

                if params.has_spouse:
                    filing_status = "married" if user_alive and spouse_alive else "single"
                else:
                    filing_status = params.filing_status
                result = strategy.fund(
                    buckets,
                    need,
                    other_ordinary_income=other_taxable,
                    social_security=social_security,
                    filing_status=filing_status,
                    index=tax_index,
                    seniors=sum(1 for a in member_ages if a >= 65),
                    medicare_members=sum(1 for a in member_ages if a >= self.tables.medicare_age),
                )
                shortfall = result.shortfall
                totals["taxes"] += result.taxes_paid

                flow.withdrawal = spending
                flow.baseline_withdrawal = baseline
                flow.portfolio_draw = result.gross_draw
                flow.guaranteed_income = guaranteed
                flow.taxes_paid = result.taxes_paid
                flow.healthcare_cost = healthcare

            totals["ltc_gross"] += ltc_gross
            totals["ltc_net"] += ltc_net
            totals["premiums"] += premium

            balance = buckets.total
            if not math.isfinite(balance) or not math.isfinite(shortfall):
                raise TrialNumericalError(scenario.trial_index, f"non-finite balance at age {age}")

            if shortfall > SHORTFALL_TOLERANCE:
                success = False
                depletion_age = age
                balance = 0.0

            balances.append(balance)
            flow.portfolio_balance = balance
            flow.net_cash_flow = balance - start_balance
            if trace is not None:
                trace.append(flow)
            if not success:
                break

        state = strategy.state
        return TrialOutcome(
            trial_index=scenario.trial_index,
            success=success,
            ending_balance=0.0 if not success else (balances[-1] if balances else buckets.total),
            depletion_age=depletion_age,
            start_age=params.current_age,
            death_age=death_age,
            balances=np.array(balances, dtype=np.float64),
            guardrail_cuts=state.cuts,
            guardrail_raises=state.raises,
            ltc_event=event,
            ltc_gross_cost=totals["ltc_gross"],
            ltc_net_cost=totals["ltc_net"],
            ltc_premiums=totals["premiums"],
            total_taxes=totals["taxes"],
            control_variate=scenario.control_variate,
            cash_flows=trace,
        )
