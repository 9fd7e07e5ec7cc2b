"""
Versioned policy tables: tax brackets, Medicare surcharge, mortality,
long-term-care costs and market assumptions.

Tables are loaded once from JSON into immutable objects and injected into the
engine, so a policy update is a data change rather than a code change.
"""
import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_TABLES_PATH = Path(__file__).parent / "policy_tables_2024.json"

FILING_STATUSES = ("single", "married")

Brackets = tuple[tuple[float, float], ...]


def _frozen_array(values) -> np.ndarray:
    array = np.array(values, dtype=np.float64)
    array.setflags(write=False)
    return array


def _brackets(rows) -> Brackets:
    return tuple((float(threshold), float(rate)) for threshold, rate in rows)


@dataclass(frozen=True, eq=False)
class StateTaxTable:
    """Income tax schedule for one state."""

    code: str
    brackets: Mapping[str, Brackets]
    standard_deduction: Mapping[str, float]
    taxes_social_security: bool = False

    @property
    def has_income_tax(self) -> bool:
        return any(self.brackets.get(status) for status in FILING_STATUSES)


@dataclass(frozen=True, eq=False)
class MortalityTable:
    """Period life table of one-year death probabilities (qx) by gender."""

    source: str
    first_age: int
    max_age: int
    young_age_slope: float
    spouse_correlation: float
    rates: Mapping[str, np.ndarray]

    def annual_rates(self, gender: str, from_age: int, to_age: int) -> np.ndarray:
        """
        Death probabilities for every age in ``[from_age, to_age)``.

        Ages below the table start are extrapolated backwards along a
        Gompertz slope; ages at or beyond ``max_age`` are certain death.
        """
        if gender not in self.rates:
            raise KeyError(f"No mortality rates for gender '{gender}'")
        table = self.rates[gender]
        ages = np.arange(from_age, to_age)
        offsets = np.clip(ages - self.first_age, 0, len(table) - 1)
        qx = table[offsets].copy()

        young = ages < self.first_age
        if np.any(young):
            qx[young] = table[0] * np.exp(self.young_age_slope * (ages[young] - self.first_age))
        qx[ages >= self.max_age] = 1.0
        return qx


@dataclass(frozen=True, eq=False)
class CareType:
    name: str
    probability: float
    cost_multiplier: float


@dataclass(frozen=True, eq=False)
class LTCTables:
    """Long-term-care incidence, duration and cost assumptions."""

    national_annual_cost: float
    incidence_start_age: int
    incidence: np.ndarray
    duration_mean_years: float
    duration_std_years: float
    duration_bounds: tuple[float, float]
    duration_gender_multipliers: Mapping[str, float]
    care_types: tuple[CareType, ...]
    state_cost_multipliers: Mapping[str, float]

    def incidence_rate(self, age: int) -> float:
        """Annual probability that a person of ``age`` starts needing care."""
        if age < self.incidence_start_age:
            return 0.0
        index = min(age - self.incidence_start_age, len(self.incidence) - 1)
        return float(self.incidence[index])

    def annual_cost(self, state: Optional[str]) -> float:
        multiplier = self.state_cost_multipliers.get(state or "", 1.0)
        return self.national_annual_cost * multiplier


@dataclass(frozen=True, eq=False)
class SocialSecurityRules:
    full_retirement_age: int
    earliest_claim_age: int
    latest_claim_age: int
    early_reduction_first_36_months: float
    early_reduction_beyond_36_months: float
    delayed_credit_per_month: float

    def claiming_factor(self, claim_age: int) -> float:
        """
        Benefit multiplier for claiming at ``claim_age`` relative to the
        full-retirement-age benefit.
        """
        claim_age = min(max(claim_age, self.earliest_claim_age), self.latest_claim_age)
        months = (claim_age - self.full_retirement_age) * 12
        if months < 0:
            early = -months
            reduction = (
                min(early, 36) * self.early_reduction_first_36_months
                + max(early - 36, 0) * self.early_reduction_beyond_36_months
            )
            return 1.0 - reduction
        return 1.0 + months * self.delayed_credit_per_month


@dataclass(frozen=True, eq=False)
class MarketAssumptions:
    """Capital-market assumptions and the market regime model."""

    asset_classes: tuple[str, ...]
    expected_returns: np.ndarray
    volatilities: np.ndarray
    correlation: np.ndarray
    regime_sensitivity: np.ndarray
    mean_reversion: float
    regimes: tuple[str, ...]
    regime_return_adjustments: np.ndarray
    regime_volatility_multipliers: np.ndarray
    transition_matrix: np.ndarray

    @property
    def num_assets(self) -> int:
        return len(self.asset_classes)

    def stationary_distribution(self) -> np.ndarray:
        """Long-run regime probabilities of the transition matrix."""
        eigenvalues, eigenvectors = np.linalg.eig(self.transition_matrix.T)
        vector = np.real(eigenvectors[:, np.argmin(np.abs(eigenvalues - 1.0))])
        vector = np.abs(vector)
        return vector / vector.sum()


@dataclass(frozen=True, eq=False)
class PolicyTables:
    """All static configuration the engine reads, tagged with a version."""

    version: str
    base_year: int
    federal_brackets: Mapping[str, Brackets]
    standard_deduction: Mapping[str, float]
    senior_deduction: Mapping[str, float]
    capital_gains_brackets: Mapping[str, Brackets]
    social_security_thresholds: Mapping[str, tuple[float, float]]
    surcharge_lookback_years: int
    medicare_age: int
    surcharge_base_part_b: float
    surcharge_brackets: Mapping[str, tuple[tuple[float, float, float], ...]]
    states: Mapping[str, StateTaxTable]
    default_state_rate: float
    mortality: MortalityTable
    ltc: LTCTables
    healthcare: Mapping[str, float]
    social_security: SocialSecurityRules
    market: MarketAssumptions
    source: Optional[dict] = field(default=None, repr=False)

    def __reduce__(self):
        # Rebuild from the raw document; the read-only mappings do not pickle
        return _parse_tables, (self.source,)

    def state_table(self, state: Optional[str]) -> Optional[StateTaxTable]:
        if not state:
            return None
        return self.states.get(state.upper())


def _parse_tables(raw: dict) -> PolicyTables:
    federal = raw["federal"]
    surcharge = raw["medicare_surcharge"]

    states = {
        code: StateTaxTable(
            code=code,
            brackets=MappingProxyType({s: _brackets(entry["brackets"][s]) for s in FILING_STATUSES}),
            standard_deduction=MappingProxyType(dict(entry["standard_deduction"])),
            taxes_social_security=bool(entry.get("taxes_social_security", False)),
        )
        for code, entry in raw["states"].items()
    }

    mortality_raw = raw["mortality"]
    mortality = MortalityTable(
        source=mortality_raw["source"],
        first_age=int(mortality_raw["first_age"]),
        max_age=int(mortality_raw["max_age"]),
        young_age_slope=float(mortality_raw["young_age_slope"]),
        spouse_correlation=float(mortality_raw["spouse_correlation"]),
        rates=MappingProxyType({
            gender: _frozen_array(mortality_raw[gender]) for gender in ("male", "female")
        }),
    )

    ltc_raw = raw["ltc"]
    ltc = LTCTables(
        national_annual_cost=float(ltc_raw["national_annual_cost"]),
        incidence_start_age=int(ltc_raw["incidence_start_age"]),
        incidence=_frozen_array(ltc_raw["incidence"]),
        duration_mean_years=float(ltc_raw["duration_mean_years"]),
        duration_std_years=float(ltc_raw["duration_std_years"]),
        duration_bounds=tuple(ltc_raw["duration_bounds"]),
        duration_gender_multipliers=MappingProxyType(dict(ltc_raw.get("duration_gender_multipliers", {}))),
        care_types=tuple(CareType(**care) for care in ltc_raw["care_types"]),
        state_cost_multipliers=MappingProxyType(dict(ltc_raw["state_cost_multipliers"])),
    )

    market_raw = raw["market"]
    regime_names = tuple(market_raw["regimes"])
    regimes = market_raw["regimes"]
    market = MarketAssumptions(
        asset_classes=tuple(market_raw["asset_classes"]),
        expected_returns=_frozen_array(market_raw["expected_returns"]),
        volatilities=_frozen_array(market_raw["volatilities"]),
        correlation=_frozen_array(market_raw["correlation"]),
        regime_sensitivity=_frozen_array(market_raw["regime_sensitivity"]),
        mean_reversion=float(market_raw["mean_reversion"]),
        regimes=regime_names,
        regime_return_adjustments=_frozen_array(
            [regimes[name]["return_adjustment"] for name in regime_names]
        ),
        regime_volatility_multipliers=_frozen_array(
            [regimes[name]["volatility_multiplier"] for name in regime_names]
        ),
        transition_matrix=_frozen_array(
            [[regimes[name]["transitions"][target] for target in regime_names] for name in regime_names]
        ),
    )

    return PolicyTables(
        version=str(raw["version"]),
        base_year=int(raw["base_year"]),
        federal_brackets=MappingProxyType({s: _brackets(federal["brackets"][s]) for s in FILING_STATUSES}),
        standard_deduction=MappingProxyType(dict(federal["standard_deduction"])),
        senior_deduction=MappingProxyType(dict(federal["senior_additional_deduction"])),
        capital_gains_brackets=MappingProxyType(
            {s: _brackets(federal["capital_gains_brackets"][s]) for s in FILING_STATUSES}
        ),
        social_security_thresholds=MappingProxyType(
            {s: tuple(federal["social_security_thresholds"][s]) for s in FILING_STATUSES}
        ),
        surcharge_lookback_years=int(surcharge["lookback_years"]),
        medicare_age=int(surcharge["start_age"]),
        surcharge_base_part_b=float(surcharge["base_part_b_monthly"]),
        surcharge_brackets=MappingProxyType({
            s: tuple(tuple(float(v) for v in row) for row in surcharge["brackets"][s])
            for s in FILING_STATUSES
        }),
        states=MappingProxyType(states),
        default_state_rate=float(raw.get("default_state_rate", 0.0)),
        mortality=mortality,
        ltc=ltc,
        healthcare=MappingProxyType(dict(raw["healthcare"])),
        social_security=SocialSecurityRules(**raw["social_security"]),
        market=market,
        source=raw,
    )


@lru_cache(maxsize=8)
def load_policy_tables(path: Optional[Union[str, Path]] = None) -> PolicyTables:
    """
    Load and cache policy tables.

    Args:
        path: JSON file to read; defaults to the packaged 2024 tables

    Returns:
        Immutable PolicyTables instance
    """
    source = Path(path) if path is not None else DEFAULT_TABLES_PATH
    with open(source, encoding="utf-8") as handle:
        raw = json.load(handle)
    tables = _parse_tables(raw)
    logger.debug("Loaded policy tables version %s from %s", tables.version, source)
    return tables
