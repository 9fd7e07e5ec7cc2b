"""
Scenario generation: correlated mean-reverting returns, market regimes,
stochastic death ages and LTC events for each trial.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
from scipy import optimize, stats
from scipy.stats import qmc

from viability.data.tables import MarketAssumptions, PolicyTables, load_policy_tables
from viability.simulation.long_term_care import LTC_DIMENSIONS, LongTermCareModel, LTCEvent
from viability.simulation.parameters import SimulationParameters, validate_iterations

logger = logging.getLogger(__name__)

UNIFORM_EPSILON = 1e-12
RETURN_FLOOR = -0.95
MORTALITY_DIMENSIONS = 2
HAZARD_MULTIPLIER_BOUNDS = (0.01, 50.0)


class MarketRegime(Enum):
    """Market regimes of the regime-switching model."""
    BULL = "bull"
    NORMAL = "normal"
    BEAR = "bear"
    CRISIS = "crisis"


@dataclass
class RegimeProfile:
    """How a regime shifts the capital-market assumptions."""

    regime: MarketRegime
    return_adjustment: float  # Added to annual return (e.g., -0.04 = -4%)
    volatility_multiplier: float  # Multiplied with volatility (e.g., 1.25 = +25% vol)

    def apply_to_stats(
        self,
        mean_returns: np.ndarray,
        volatilities: np.ndarray,
        sensitivity: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Apply the regime to annual statistics, scaled per asset class."""
        adjusted_mean = mean_returns + self.return_adjustment * sensitivity
        adjusted_std = volatilities * (1 + (self.volatility_multiplier - 1) * sensitivity)
        return adjusted_mean, adjusted_std


def regime_profiles(market: MarketAssumptions) -> dict[MarketRegime, RegimeProfile]:
    """Regime profiles in the order of the transition matrix."""
    return {
        MarketRegime(name): RegimeProfile(
            regime=MarketRegime(name),
            return_adjustment=float(market.regime_return_adjustments[i]),
            volatility_multiplier=float(market.regime_volatility_multipliers[i]),
        )
        for i, name in enumerate(market.regimes)
    }


@dataclass(frozen=True)
class VarianceReductionConfig:
    """Variance reduction switches for the scenario generator."""

    antithetic: bool = True
    latin_hypercube: bool = True
    control_variate: bool = True
    control_variate_years: int = 30

    def __post_init__(self):
        if self.control_variate_years <= 0:
            raise ValueError("Control variate horizon must be positive")


@dataclass
class TrialScenario:
    """All random inputs of one trial. Ages are in the user's age terms."""

    trial_index: int
    returns: np.ndarray  # Shape: (horizon, num_assets)
    regimes: np.ndarray  # Shape: (horizon,), indices into MarketAssumptions.regimes
    user_death_age: int
    spouse_death_age: Optional[int]
    ltc_event: Optional[LTCEvent]
    control_variate: float
    mirrored: bool = False

    @property
    def household_death_age(self) -> int:
        if self.spouse_death_age is None:
            return self.user_death_age
        return max(self.user_death_age, self.spouse_death_age)


def _safe_cholesky(cov_matrix: np.ndarray, max_tries: int = 5) -> np.ndarray:
    """
    Perform Cholesky decomposition with regularization fallback.

    If the matrix is not positive definite (e.g., due to highly correlated
    assets), adds small regularization to make it decomposable.
    """
    try:
        return np.linalg.cholesky(cov_matrix)
    except np.linalg.LinAlgError:
        pass

    n = cov_matrix.shape[0]
    reg_factor = 1e-8

    for _ in range(max_tries):
        try:
            regularized = cov_matrix + np.eye(n) * reg_factor
            return np.linalg.cholesky(regularized)
        except np.linalg.LinAlgError:
            reg_factor *= 10

    # Final fallback: use eigenvalue decomposition
    eigenvalues, eigenvectors = np.linalg.eigh(cov_matrix)
    eigenvalues = np.maximum(eigenvalues, 1e-8)
    cov_fixed = eigenvectors @ np.diag(eigenvalues) @ eigenvectors.T
    return np.linalg.cholesky(cov_fixed)


def expected_death_age(qx: np.ndarray, current_age: int, multiplier: float) -> float:
    """Mean death age when every hazard in ``qx`` is scaled by ``multiplier``."""
    scaled = np.minimum(qx * multiplier, 1.0)
    survival = np.concatenate(([1.0], np.cumprod(1.0 - scaled)[:-1]))
    return current_age + float(survival.sum())


def calibrate_hazard_multiplier(qx: np.ndarray, current_age: int, life_expectancy: float) -> float:
    """
    Find the hazard scale whose mean death age matches ``life_expectancy``.

    Expected death age falls as the multiplier grows, so the root is bracketed
    by HAZARD_MULTIPLIER_BOUNDS; targets outside the bracket are clamped.
    """
    low, high = HAZARD_MULTIPLIER_BOUNDS

    def gap(multiplier: float) -> float:
        return expected_death_age(qx, current_age, multiplier) - life_expectancy

    if gap(low) <= 0:
        logger.warning("Life expectancy %.1f is above the table range; clamping hazard scale", life_expectancy)
        return low
    if gap(high) >= 0:
        logger.warning("Life expectancy %.1f is below the table range; clamping hazard scale", life_expectancy)
        return high
    return float(optimize.brentq(gap, low, high, xtol=1e-10))


class ScenarioGenerator:
    """
    Generates reproducible random inputs for every trial of a batch.

    Each trial consumes one row of uniforms: return shocks for every asset and
    year, one regime draw per year, two mortality draws and the LTC draws.
    Antithetic pairs share a row, the odd trial using ``1 - u``. With Latin
    Hypercube sampling the rows of a batch are stratified jointly; otherwise
    each row is drawn from a generator seeded by ``(master_seed, row)``.
    """

    def __init__(
        self,
        params: SimulationParameters,
        num_trials: int,
        master_seed: int,
        tables: Optional[PolicyTables] = None,
        variance_reduction: Optional[VarianceReductionConfig] = None
    ):
        validate_iterations(num_trials)
        self.tables = tables or load_policy_tables()
        params.validate_against(self.tables)

        self.params = params
        self.num_trials = int(num_trials)
        self.master_seed = int(master_seed)
        self.variance_reduction = variance_reduction or VarianceReductionConfig()
        self.market = self.tables.market
        self.ltc_model = LongTermCareModel(params, self.tables)

        mortality = self.tables.mortality
        offset = params.spouse_age_offset
        self.horizon = mortality.max_age + max(0, offset) - params.current_age
        self.num_assets = self.market.num_assets
        self.dimensions = self.num_assets * self.horizon + self.horizon + MORTALITY_DIMENSIONS + LTC_DIMENSIONS

        self.mean_returns = params.asset_returns(self.tables)
        self.volatilities = params.asset_volatilities(self.tables)
        self.regime_stats = [
            profile.apply_to_stats(self.mean_returns, self.volatilities, self.market.regime_sensitivity)
            for profile in regime_profiles(self.market).values()
        ]
        self.cholesky = _safe_cholesky(np.array(self.market.correlation))
        self.stationary = np.cumsum(self.market.stationary_distribution())
        self.transitions = np.cumsum(self.market.transition_matrix, axis=1)

        weights = np.array(params.allocation)
        covariance = np.outer(self.volatilities, self.volatilities) * self.market.correlation
        self.portfolio_volatility = float(np.sqrt(weights @ covariance @ weights))
        self._weighted_vol = weights * self.volatilities

        self._user_qx = mortality.annual_rates(params.gender, params.current_age, mortality.max_age)
        self.user_hazard_multiplier = calibrate_hazard_multiplier(
            self._user_qx, params.current_age, params.life_expectancy
        )
        self._spouse_qx = None
        self.spouse_hazard_multiplier = 1.0
        if params.has_spouse:
            self._spouse_qx = mortality.annual_rates(params.spouse_gender, params.spouse_age, mortality.max_age)
            if params.spouse_life_expectancy is not None:
                self.spouse_hazard_multiplier = calibrate_hazard_multiplier(
                    self._spouse_qx, params.spouse_age, params.spouse_life_expectancy
                )

        self._lhs_rows = None
        if self.variance_reduction.latin_hypercube:
            sampler = qmc.LatinHypercube(
                d=self.dimensions,
                rng=np.random.default_rng(np.random.SeedSequence([self.master_seed, self.num_rows])),
            )
            self._lhs_rows = sampler.random(self.num_rows)

        logger.debug(
            "Scenario generator ready: horizon=%d years, dimensions=%d, hazard scale=%.4f",
            self.horizon, self.dimensions, self.user_hazard_multiplier,
        )

    @property
    def num_rows(self) -> int:
        if self.variance_reduction.antithetic:
            return (self.num_trials + 1) // 2
        return self.num_trials

    def uniforms(self, trial_index: int) -> tuple[np.ndarray, bool]:
        """Uniform row of a trial and whether it is the mirrored half of a pair."""
        if not 0 <= trial_index < self.num_trials:
            raise IndexError(f"Trial index {trial_index} outside batch of {self.num_trials}")
        if self.variance_reduction.antithetic:
            row, mirrored = divmod(trial_index, 2)
            mirrored = bool(mirrored)
        else:
            row, mirrored = trial_index, False

        if self._lhs_rows is not None:
            u = self._lhs_rows[row].copy()
        else:
            rng = np.random.default_rng(np.random.SeedSequence([self.master_seed, row]))
            u = rng.random(self.dimensions)

        if mirrored:
            u = 1.0 - u
        return np.clip(u, UNIFORM_EPSILON, 1.0 - UNIFORM_EPSILON), mirrored

    def generate(self, trial_index: int) -> TrialScenario:
        """Build the full random scenario of one trial."""
        u, mirrored = self.uniforms(trial_index)
        n_returns = self.num_assets * self.horizon
        return_u = u[:n_returns].reshape(self.horizon, self.num_assets)
        regime_u = u[n_returns:n_returns + self.horizon]
        mortality_u = u[n_returns + self.horizon:n_returns + self.horizon + MORTALITY_DIMENSIONS]
        ltc_u = u[n_returns + self.horizon + MORTALITY_DIMENSIONS:]

        regimes = self.regime_path(regime_u)
        shocks = stats.norm.ppf(return_u) @ self.cholesky.T
        returns = self.return_path(shocks, regimes)
        user_death, spouse_death = self.death_ages(mortality_u)
        event = self.ltc_model.sample_event(ltc_u, user_death, spouse_death)

        return TrialScenario(
            trial_index=trial_index,
            returns=returns,
            regimes=regimes,
            user_death_age=user_death,
            spouse_death_age=spouse_death,
            ltc_event=event,
            control_variate=self.control_variate(shocks),
            mirrored=mirrored,
        )

    def regime_path(self, regime_u: np.ndarray) -> np.ndarray:
        """
        Markov regime path; the first year is drawn from the stationary
        distribution so the path never depends on the household's age.
        """
        last = len(self.stationary) - 1
        path = np.empty(len(regime_u), dtype=np.int64)
        path[0] = min(int(np.searchsorted(self.stationary, regime_u[0], side="right")), last)
        for t in range(1, len(regime_u)):
            row = self.transitions[path[t - 1]]
            path[t] = min(int(np.searchsorted(row, regime_u[t], side="right")), last)
        return path

    def return_path(self, shocks: np.ndarray, regimes: np.ndarray) -> np.ndarray:
        """
        Annual returns per asset class.

        The reversion term for year t is built from year t-1's deviation and is
        part of year t's return, so it is in place before that year's return is
        applied to any balance.
        """
        theta = self.market.mean_reversion

        returns = np.empty_like(shocks)
        previous_deviation = np.zeros(self.num_assets)
        for t in range(shocks.shape[0]):
            mean, vol = self.regime_stats[regimes[t]]
            annual = mean - theta * previous_deviation + vol * shocks[t]
            returns[t] = np.maximum(annual, RETURN_FLOOR)
            previous_deviation = returns[t] - self.mean_returns
        return returns

    def death_ages(self, mortality_u: np.ndarray) -> tuple[int, Optional[int]]:
        """
        Death ages for user and spouse (spouse in user-age terms).

        The spouse draw is coupled to the user's through a Gaussian copula.
        """
        params = self.params
        user_death = params.current_age + self._years_lived(
            self._user_qx, self.user_hazard_multiplier, mortality_u[0]
        )
        if not params.has_spouse:
            return user_death, None

        rho = self.tables.mortality.spouse_correlation
        z_user = stats.norm.ppf(mortality_u[0])
        z_spouse = rho * z_user + np.sqrt(1 - rho ** 2) * stats.norm.ppf(mortality_u[1])
        spouse_u = float(np.clip(stats.norm.cdf(z_spouse), UNIFORM_EPSILON, 1 - UNIFORM_EPSILON))
        spouse_years = self._years_lived(self._spouse_qx, self.spouse_hazard_multiplier, spouse_u)
        return user_death, params.current_age + spouse_years

    @staticmethod
    def _years_lived(qx: np.ndarray, multiplier: float, u: float) -> int:
        scaled = np.minimum(qx * multiplier, 1.0)
        died_by = 1.0 - np.cumprod(1.0 - scaled)
        died_by[-1] = 1.0
        return int(np.searchsorted(died_by, u, side="right")) + 1

    def control_variate(self, shocks: np.ndarray) -> float:
        """
        Lognormal portfolio growth factor over the early horizon.

        Its expectation is exactly 1, which makes it usable as a control
        variate for the success indicator.
        """
        if not self.variance_reduction.control_variate or self.portfolio_volatility == 0:
            return 1.0
        years = min(self.horizon, self.variance_reduction.control_variate_years)
        portfolio_shocks = shocks[:years] @ self._weighted_vol
        sigma = self.portfolio_volatility
        standardized = portfolio_shocks / sigma
        return float(np.exp(sigma * standardized.sum() - 0.5 * years * sigma ** 2))
