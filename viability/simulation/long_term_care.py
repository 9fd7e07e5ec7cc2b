"""
Long-term-care event model.

Decides per trial whether the household needs paid care, when it starts,
how long it lasts and what it costs, and nets the cost against an optional
insurance policy.
"""
import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import stats

from viability.data.tables import PolicyTables
from viability.simulation.parameters import LTCInsurance, SimulationParameters

logger = logging.getLogger(__name__)

# Uniform draws consumed per trial: onset, affected member, duration, care type.
LTC_DIMENSIONS = 4

DAYS_PER_YEAR = 365


@dataclass(frozen=True)
class LTCEvent:
    """
    One care episode. Ages are in the primary user's age terms; each cost
    tuple has one entry per event year starting at ``onset_age``.
    """

    onset_age: int
    duration_years: float
    care_type: str
    person: str
    annual_gross_cost: float
    gross_costs: tuple
    insurance_benefits: tuple
    net_costs: tuple

    @property
    def end_age(self) -> int:
        return self.onset_age + len(self.gross_costs)

    @property
    def total_gross_cost(self) -> float:
        return float(sum(self.gross_costs))

    @property
    def total_insurance_benefit(self) -> float:
        return float(sum(self.insurance_benefits))

    @property
    def total_net_cost(self) -> float:
        return float(sum(self.net_costs))

    def is_active(self, age: int) -> bool:
        return self.onset_age <= age < self.end_age

    def gross_cost_at(self, age: int) -> float:
        return self.gross_costs[age - self.onset_age] if self.is_active(age) else 0.0

    def benefit_at(self, age: int) -> float:
        return self.insurance_benefits[age - self.onset_age] if self.is_active(age) else 0.0

    def net_cost_at(self, age: int) -> float:
        return self.net_costs[age - self.onset_age] if self.is_active(age) else 0.0


def lognormal_shape(mean: float, std: float) -> tuple[float, float]:
    """Shape and scale of the lognormal with the given mean and std."""
    sigma_sq = math.log(1.0 + (std / mean) ** 2)
    mu = math.log(mean) - sigma_sq / 2
    return math.sqrt(sigma_sq), math.exp(mu)


class LongTermCareModel:
    """
    Samples household LTC events from age-conditioned incidence hazards and
    applies insurance terms to the resulting cost schedule.
    """

    def __init__(self, params: SimulationParameters, tables: PolicyTables):
        self.params = params
        self.ltc = tables.ltc
        self.insurance = params.ltc_insurance
        self._duration_shape, self._duration_scale = lognormal_shape(
            self.ltc.duration_mean_years, self.ltc.duration_std_years
        )
        probabilities = np.array([care.probability for care in self.ltc.care_types])
        self._care_cumulative = np.cumsum(probabilities / probabilities.sum())
        self._base_cost = self.ltc.annual_cost(params.state)

    def _members_alive(
        self,
        age: int,
        user_death_age: int,
        spouse_death_age: Optional[int]
    ) -> list[tuple[str, int, str]]:
        members = []
        if age < user_death_age:
            members.append(("user", age, self.params.gender))
        if spouse_death_age is not None and age < spouse_death_age:
            members.append(("spouse", age - self.params.spouse_age_offset, self.params.spouse_gender))
        return members

    def household_hazards(
        self,
        user_death_age: int,
        spouse_death_age: Optional[int] = None
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Annual probability that someone in the household starts care.

        Args:
            user_death_age: Age at which the user dies
            spouse_death_age: Spouse death age in user-age terms, if any

        Returns:
            Tuple of (ages, hazards) covering every year the household lives
        """
        last_age = max(user_death_age, spouse_death_age or 0)
        ages = np.arange(self.params.current_age, last_age)
        hazards = np.zeros(len(ages))
        for i, age in enumerate(ages):
            no_onset = 1.0
            for _, member_age, _ in self._members_alive(age, user_death_age, spouse_death_age):
                no_onset *= 1.0 - self.ltc.incidence_rate(member_age)
            hazards[i] = 1.0 - no_onset
        return ages, hazards

    def lifetime_probability(self, user_death_age: int, spouse_death_age: Optional[int] = None) -> float:
        _, hazards = self.household_hazards(user_death_age, spouse_death_age)
        return float(1.0 - np.prod(1.0 - hazards))

    def sample_event(
        self,
        uniforms: np.ndarray,
        user_death_age: int,
        spouse_death_age: Optional[int] = None
    ) -> Optional[LTCEvent]:
        """
        Inverse-CDF sample of the household's care episode.

        ``uniforms`` holds LTC_DIMENSIONS values in (0, 1). Returns None when
        no one in the household ever needs care.
        """
        ages, hazards = self.household_hazards(user_death_age, spouse_death_age)
        if len(ages) == 0:
            return None
        cumulative = 1.0 - np.cumprod(1.0 - hazards)
        position = int(np.searchsorted(cumulative, uniforms[0], side="right"))
        if position >= len(ages):
            return None
        onset_age = int(ages[position])

        # Pick the affected member in proportion to their own incidence
        members = self._members_alive(onset_age, user_death_age, spouse_death_age)
        weights = np.array([self.ltc.incidence_rate(member_age) for _, member_age, _ in members])
        chosen = int(np.searchsorted(np.cumsum(weights / weights.sum()), uniforms[1], side="right"))
        person, _, gender = members[min(chosen, len(members) - 1)]
        person_death_age = user_death_age if person == "user" else spouse_death_age

        duration = float(stats.lognorm.ppf(uniforms[2], s=self._duration_shape, scale=self._duration_scale))
        duration *= self.ltc.duration_gender_multipliers.get(gender, 1.0)
        low, high = self.ltc.duration_bounds
        duration = min(max(duration, low), high, person_death_age - onset_age)

        care_index = min(
            int(np.searchsorted(self._care_cumulative, uniforms[3], side="right")),
            len(self.ltc.care_types) - 1,
        )
        care = self.ltc.care_types[care_index]
        years_from_now = onset_age - self.params.current_age
        annual_cost = self._base_cost * care.cost_multiplier * (1 + self.params.ltc_inflation_rate) ** years_from_now

        return self.build_event(onset_age, duration, care.name, annual_cost, person=person)

    def build_event(
        self,
        onset_age: int,
        duration_years: float,
        care_type: str,
        annual_gross_cost: float,
        person: str = "user",
        insurance: Optional[LTCInsurance] = None,
        use_policy: bool = True
    ) -> LTCEvent:
        """
        Cost schedule of an episode, netted against insurance.

        ``insurance`` overrides the household's policy; pass
        ``use_policy=False`` to price the episode uninsured.
        """
        if insurance is None and use_policy:
            insurance = self.insurance

        num_years = max(1, math.ceil(duration_years))
        gross, benefits, net = [], [], []
        for k in range(num_years):
            fraction = min(1.0, duration_years - k)
            year_gross = annual_gross_cost * (1 + self.params.ltc_inflation_rate) ** k * fraction
            benefit = 0.0
            if insurance is not None:
                benefit = self._insurance_benefit(insurance, onset_age + k, k, fraction, year_gross)
            gross.append(year_gross)
            benefits.append(benefit)
            net.append(year_gross - benefit)

        return LTCEvent(
            onset_age=onset_age,
            duration_years=duration_years,
            care_type=care_type,
            person=person,
            annual_gross_cost=annual_gross_cost,
            gross_costs=tuple(gross),
            insurance_benefits=tuple(benefits),
            net_costs=tuple(net),
        )

    def _insurance_benefit(
        self,
        insurance: LTCInsurance,
        age: int,
        event_year: int,
        fraction: float,
        year_gross: float
    ) -> float:
        care_days = DAYS_PER_YEAR * fraction
        if care_days <= 0:
            return 0.0

        # Benefits cover days [elimination, elimination + benefit period) of the claim
        start = DAYS_PER_YEAR * event_year
        end = start + care_days
        covered_from = insurance.elimination_days
        covered_to = insurance.elimination_days + insurance.benefit_period_years * DAYS_PER_YEAR
        covered_days = max(0.0, min(end, covered_to) - max(start, covered_from))
        if covered_days == 0:
            return 0.0

        daily_benefit = insurance.daily_benefit
        if insurance.inflation_rider:
            daily_benefit *= (1 + insurance.rider_rate) ** (age - self.params.current_age)
        daily_cost = year_gross / care_days
        return min(daily_cost, daily_benefit) * covered_days

    def premium(self, age: int, event: Optional[LTCEvent]) -> float:
        """Premium owed in the year the user is ``age``."""
        if self.insurance is None:
            return 0.0
        if event is not None and event.is_active(age) and not self.insurance.premiums_during_claim:
            return 0.0
        return self.insurance.annual_premium
