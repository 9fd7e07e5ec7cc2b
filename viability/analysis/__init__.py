from .aggregation import AggregateResult, AggregationEngine, GuardrailStats, LTCStats, OptimalRetirementAge, PercentileBands
from .gap_analysis import GapAnalysisConfig, GapFactor, analyze_gaps, find_optimal_retirement_age
