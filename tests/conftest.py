"""
Shared test fixtures for all test modules.
"""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import numpy as np
import pytest

from viability.data.tables import load_policy_tables
from viability.simulation.parameters import AssetBuckets, SimulationParameters
from viability.simulation.scenarios import TrialScenario


@pytest.fixture
def tables():
    """Packaged 2024 policy tables."""
    return load_policy_tables()


@pytest.fixture
def regression_params() -> SimulationParameters:
    """Mid-career saver used as the regression baseline."""
    return SimulationParameters(
        current_age=45,
        retirement_age=67,
        life_expectancy=90,
        current_retirement_assets=350000,
        annual_savings=25000,
        annual_retirement_expenses=80000,
        allocation=(0.60, 0.35, 0.05),
    )


@pytest.fixture
def retiree_params() -> SimulationParameters:
    """Already-retired single household with a short horizon and a borderline plan."""
    return SimulationParameters(
        current_age=75,
        retirement_age=75,
        life_expectancy=88,
        current_retirement_assets=500000,
        annual_retirement_expenses=55000,
        annual_healthcare_expenses=0.0,
        social_security_benefit=18000,
        social_security_claim_age=67,
        allocation=(0.50, 0.45, 0.05),
    )


@pytest.fixture
def couple_params() -> SimulationParameters:
    """Married couple near retirement with explicit buckets."""
    return SimulationParameters(
        current_age=60,
        retirement_age=65,
        life_expectancy=88,
        spouse_age=57,
        spouse_life_expectancy=91,
        current_retirement_assets=1_200_000,
        buckets=AssetBuckets(
            tax_deferred=700_000, tax_free=150_000, taxable=300_000, taxable_basis=200_000, cash=50_000
        ),
        annual_savings=30000,
        annual_income=180000,
        annual_retirement_expenses=90000,
        social_security_benefit=30000,
        spouse_social_security_benefit=18000,
        filing_status="married",
        state="CA",
    )


def make_scenario(
    params: SimulationParameters,
    annual_return: float = 0.05,
    death_age: int = 90,
    spouse_death_age=None,
    ltc_event=None,
    trial_index: int = 0,
    num_assets: int = 3
) -> TrialScenario:
    """Deterministic scenario with the same return for every asset and year."""
    horizon = 120 - params.current_age + 10
    return TrialScenario(
        trial_index=trial_index,
        returns=np.full((horizon, num_assets), annual_return),
        regimes=np.ones(horizon, dtype=np.int64),
        user_death_age=death_age,
        spouse_death_age=spouse_death_age,
        ltc_event=ltc_event,
        control_variate=1.0,
    )
