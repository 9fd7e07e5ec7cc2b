"""
Gap analysis: which plan changes would lift the success probability to the
target, and the earliest retirement age that meets it.

Both searches re-simulate modified parameters through a caller-supplied
function that runs a smaller batch with the same seed, so every candidate is
compared on common random numbers.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from viability.analysis.aggregation import OptimalRetirementAge
from viability.simulation.parameters import LTCInsurance, SimulationParameters

logger = logging.getLogger(__name__)

SimulateFn = Callable[[SimulationParameters], float]


@dataclass(frozen=True)
class GapAnalysisConfig:
    """Settings for the intervention menu and the retirement-age search."""
    target_success: float = 0.80
    top_n: int = 3
    analysis_iterations: int = 250
    savings_increase: float = 0.20
    min_savings_increase: float = 5000.0
    retirement_delay_years: int = 2
    expense_reduction: float = 0.10
    part_time_share: float = 0.25  # Part-time income as a share of expenses
    part_time_years: int = 5
    delayed_claim_age: int = 70
    max_retirement_age: int = 75
    high_impact_points: float = 10.0
    medium_impact_points: float = 5.0

    def __post_init__(self):
        if not 0 < self.target_success <= 1:
            raise ValueError("Target success must be between 0 and 1")
        if self.top_n <= 0 or self.analysis_iterations <= 0:
            raise ValueError("top_n and analysis_iterations must be positive")


@dataclass
class Intervention:
    """A candidate change to the plan."""
    name: str
    category: str  # savings, insurance, income, allocation, optimization
    description: str
    params: SimulationParameters


@dataclass
class GapFactor:
    """A ranked intervention with its estimated effect."""
    name: str
    category: str
    description: str
    baseline_success: float
    new_success: float
    impact: str = "low"
    priority: int = 0
    changes: dict = field(default_factory=dict)

    @property
    def improvement_points(self) -> float:
        return (self.new_success - self.baseline_success) * 100


def _changed_fields(before: SimulationParameters, after: SimulationParameters) -> dict:
    names = (
        "annual_savings", "retirement_age", "annual_retirement_expenses", "allocation",
        "social_security_claim_age", "spouse_social_security_claim_age",
        "part_time_income", "part_time_until_age", "ltc_insurance",
    )
    return {name: getattr(after, name) for name in names if getattr(before, name) != getattr(after, name)}


def candidate_interventions(params: SimulationParameters, config: GapAnalysisConfig) -> list[Intervention]:
    """The intervention menu applicable to this household."""
    candidates = []

    if params.retirement_age > params.current_age:
        extra = max(params.annual_savings * config.savings_increase, config.min_savings_increase)
        candidates.append(Intervention(
            name="increase_savings",
            category="savings",
            description=f"Increase annual savings by ${extra:,.0f}",
            params=params.with_changes(annual_savings=params.annual_savings + extra),
        ))

    if params.ltc_insurance is None:
        policy = LTCInsurance()
        candidates.append(Intervention(
            name="add_ltc_insurance",
            category="insurance",
            description=(
                f"Add long-term-care insurance (${policy.daily_benefit:,.0f}/day, "
                f"{policy.benefit_period_years:g} years)"
            ),
            params=params.with_changes(ltc_insurance=policy),
        ))

    if params.retirement_age + config.retirement_delay_years <= config.max_retirement_age:
        years = config.retirement_delay_years
        candidates.append(Intervention(
            name="delay_retirement",
            category="optimization",
            description=f"Delay retirement by {years} years to age {params.retirement_age + years}",
            params=params.with_changes(retirement_age=params.retirement_age + years),
        ))

    if params.annual_retirement_expenses > 0:
        candidates.append(Intervention(
            name="reduce_expenses",
            category="optimization",
            description=f"Reduce retirement expenses by {config.expense_reduction:.0%}",
            params=params.with_changes(
                annual_retirement_expenses=params.annual_retirement_expenses * (1 - config.expense_reduction)
            ),
        ))

    shifted = shifted_allocation(params)
    if shifted is not None:
        candidates.append(Intervention(
            name="shift_allocation",
            category="allocation",
            description=f"Move equity allocation to {shifted[0]:.0%}",
            params=params.with_changes(allocation=shifted),
        ))

    delay_claims = {}
    if params.social_security_benefit > 0 and params.social_security_claim_age < config.delayed_claim_age:
        delay_claims["social_security_claim_age"] = config.delayed_claim_age
    if params.spouse_social_security_benefit > 0 and params.spouse_social_security_claim_age < config.delayed_claim_age:
        delay_claims["spouse_social_security_claim_age"] = config.delayed_claim_age
    if delay_claims:
        candidates.append(Intervention(
            name="delay_social_security",
            category="income",
            description=f"Delay Social Security claiming to age {config.delayed_claim_age}",
            params=params.with_changes(**delay_claims),
        ))

    if params.part_time_income == 0 and params.annual_retirement_expenses > 0:
        amount = params.annual_retirement_expenses * config.part_time_share
        until = params.retirement_age + config.part_time_years
        candidates.append(Intervention(
            name="part_time_income",
            category="income",
            description=f"Earn ${amount:,.0f}/year part-time until age {until}",
            params=params.with_changes(part_time_income=amount, part_time_until_age=until),
        ))

    return candidates


def shifted_allocation(params: SimulationParameters) -> Optional[tuple]:
    """
    Age-based equity target (110 minus age, bounded to 20-90%), keeping the
    ratio between the remaining asset classes. None if already close.
    """
    weights = list(params.allocation)
    target = min(max((110 - params.current_age) / 100, 0.20), 0.90)
    if abs(weights[0] - target) < 0.05:
        return None
    rest = sum(weights[1:])
    if rest > 0:
        others = [w / rest * (1 - target) for w in weights[1:]]
    else:
        others = [1 - target] + [0.0] * (len(weights) - 2)
    return (target, *others)


def classify_impact(points: float, config: GapAnalysisConfig) -> str:
    if points > config.high_impact_points:
        return "high"
    if points > config.medium_impact_points:
        return "medium"
    return "low"


def analyze_gaps(
    params: SimulationParameters,
    simulate: SimulateFn,
    config: Optional[GapAnalysisConfig] = None,
    baseline_success: Optional[float] = None
) -> list[GapFactor]:
    """
    Rank the interventions that improve the success probability.

    Args:
        params: Household plan
        simulate: Returns the success probability of modified parameters
        config: Menu and ranking settings
        baseline_success: Success probability of ``params`` from the same
            simulate function (computed when omitted)

    Returns:
        Up to ``top_n`` factors ordered by improvement, empty when the plan
        already meets the target
    """
    config = config or GapAnalysisConfig()
    if baseline_success is None:
        baseline_success = simulate(params)
    if baseline_success >= config.target_success:
        return []

    factors = []
    for intervention in candidate_interventions(params, config):
        new_success = simulate(intervention.params)
        logger.debug("Intervention %s: %.4f -> %.4f", intervention.name, baseline_success, new_success)
        if new_success <= baseline_success:
            continue
        factors.append(GapFactor(
            name=intervention.name,
            category=intervention.category,
            description=intervention.description,
            baseline_success=baseline_success,
            new_success=new_success,
            changes=_changed_fields(params, intervention.params),
        ))

    factors.sort(key=lambda factor: factor.improvement_points, reverse=True)
    top = factors[:config.top_n]
    for priority, factor in enumerate(top, start=1):
        factor.priority = priority
        factor.impact = classify_impact(factor.improvement_points, config)
    return top


def find_optimal_retirement_age(
    params: SimulationParameters,
    simulate: SimulateFn,
    config: Optional[GapAnalysisConfig] = None,
    success_at_desired: Optional[float] = None
) -> OptimalRetirementAge:
    """
    Binary search for the earliest retirement age meeting the target.

    Assumes success is non-decreasing in retirement age.
    """
    config = config or GapAnalysisConfig()
    target = config.target_success
    evaluations = {}

    def success_at(age: int) -> float:
        if age not in evaluations:
            evaluations[age] = simulate(params.with_changes(retirement_age=age))
        return evaluations[age]

    desired = params.retirement_age
    if success_at_desired is not None:
        evaluations[desired] = success_at_desired

    low = params.current_age
    high = max(config.max_retirement_age, desired)
    if success_at(high) < target:
        return OptimalRetirementAge(
            desired_age=desired,
            optimal_age=None,
            target=target,
            success_at_desired=success_at(desired),
            evaluations=dict(sorted(evaluations.items())),
        )

    while low < high:
        middle = (low + high) // 2
        if success_at(middle) >= target:
            high = middle
        else:
            low = middle + 1

    return OptimalRetirementAge(
        desired_age=desired,
        optimal_age=low,
        target=target,
        success_at_desired=success_at(desired),
        success_at_optimal=success_at(low),
        evaluations=dict(sorted(evaluations.items())),
    )
