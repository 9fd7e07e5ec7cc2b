from .monte_carlo import (
    CancellationToken, MonteCarloSimulator, SimulationCancelled, SimulationError, SimulationTimeout,
    run_retirement_simulation,
)
from .parameters import AssetBuckets, GuaranteedIncome, LTCInsurance, SimulationParameters, ValidationError
from .scenarios import MarketRegime, ScenarioGenerator, TrialScenario, VarianceReductionConfig
from .long_term_care import LongTermCareModel, LTCEvent
from .withdrawal import GuardrailConfig, GuardrailState, WithdrawalResult, WithdrawalStrategy
from .taxes import MedicareSurchargeTracker, TaxBreakdown, TaxCalculator, TaxConfig
from .cash_flow import CashFlowProjector, TrialNumericalError, TrialOutcome, YearlyCashFlow
