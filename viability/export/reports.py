"""
Export functionality for retirement simulation results.
"""
import io
from dataclasses import asdict
from datetime import datetime
from typing import TYPE_CHECKING, Optional
import pandas as pd

if TYPE_CHECKING:
    from viability.analysis.aggregation import AggregateResult
    from viability.simulation.cash_flow import TrialOutcome
    from viability.simulation.parameters import SimulationParameters


def percentile_bands_frame(result: "AggregateResult") -> pd.DataFrame:
    """Balance percentiles by age, one column per percentile."""
    bands = result.percentile_bands
    frame = pd.DataFrame(
        bands.values.T,
        index=pd.Index(bands.ages, name="age"),
        columns=[f"p{p}" for p in bands.percentiles],
    )
    frame["trials"] = bands.trials_at_age
    return frame.reset_index()


def cash_flow_frame(outcomes: list["TrialOutcome"]) -> pd.DataFrame:
    """Yearly cash flows of every retained trial, tagged by trial index."""
    rows = []
    for outcome in outcomes:
        for flow in outcome.cash_flows or []:
            row = asdict(flow)
            row["trial"] = outcome.trial_index
            rows.append(row)
    frame = pd.DataFrame(rows)
    if not frame.empty:
        frame = frame[["trial"] + [c for c in frame.columns if c != "trial"]]
    return frame


def gap_factors_frame(result: "AggregateResult") -> pd.DataFrame:
    """Ranked gap-analysis interventions."""
    columns = ["priority", "name", "category", "impact", "description", "baseline_success",
               "new_success", "improvement_points"]
    rows = [
        {
            "priority": factor.priority,
            "name": factor.name,
            "category": factor.category,
            "impact": factor.impact,
            "description": factor.description,
            "baseline_success": factor.baseline_success,
            "new_success": factor.new_success,
            "improvement_points": factor.improvement_points,
        }
        for factor in result.gap_analysis
    ]
    return pd.DataFrame(rows, columns=columns)


def summary_frame(result: "AggregateResult") -> pd.DataFrame:
    summary = result.summary()
    return pd.DataFrame({"metric": list(summary.keys()), "value": list(summary.values())})


def create_excel_report(
    result: "AggregateResult",
    params: Optional["SimulationParameters"] = None
) -> bytes:
    """
    Create an Excel report with multiple sheets.

    Args:
        result: Aggregated simulation result
        params: Household parameters to include as an input sheet

    Returns:
        Excel file as bytes
    """
    output = io.BytesIO()

    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        summary_frame(result).to_excel(writer, sheet_name='Summary', index=False)
        percentile_bands_frame(result).to_excel(writer, sheet_name='Percentiles', index=False)

        if result.gap_analysis:
            gap_factors_frame(result).to_excel(writer, sheet_name='Gap Analysis', index=False)

        if result.optimal_retirement_age is not None:
            evaluations = result.optimal_retirement_age.evaluations
            pd.DataFrame({
                'retirement_age': list(evaluations.keys()),
                'success_probability': list(evaluations.values()),
            }).to_excel(writer, sheet_name='Retirement Age', index=False)

        if params is not None:
            inputs = {
                name: value for name, value in asdict(params).items()
                if not isinstance(value, (dict, list, tuple)) or name == "allocation"
            }
            pd.DataFrame({
                'parameter': list(inputs.keys()),
                'value': [str(v) for v in inputs.values()],
            }).to_excel(writer, sheet_name='Inputs', index=False)

        if result.trials:
            # Only include first 1000 rows for file size
            cash_flow_frame(result.trials).head(1000).to_excel(
                writer, sheet_name='Cash Flows', index=False
            )

    output.seek(0)
    return output.getvalue()


def create_csv_report(result: "AggregateResult") -> str:
    """
    Create a simple CSV summary report.

    Returns:
        CSV content as string
    """
    lines = [
        "Retirement Viability Simulation Report",
        f"Created: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "=== Results ===",
        f"Success probability,{result.success_probability:.2%}",
        f"Trials,{result.total_trials}",
        f"Excluded trials,{result.excluded_trials}",
        f"Average ending balance,{result.average_ending_balance:.2f}",
        f"Median ending balance,{result.median_ending_balance:.2f}",
        f"Seed,{result.seed}",
        f"Tables version,{result.tables_version}",
    ]
    if result.success_probability_cv is not None:
        lines.append(f"Success probability (control variate),{result.success_probability_cv:.2%}")
    if result.average_years_until_depletion is not None:
        lines.append(f"Average years until depletion,{result.average_years_until_depletion:.1f}")

    guard = result.guardrail_stats
    ltc = result.ltc_stats
    lines.extend([
        "",
        "=== Guardrails ===",
        f"Mean adjustments,{guard.mean_adjustments:.2f}",
        f"Max adjustments,{guard.max_adjustments}",
        "",
        "=== Long-Term Care ===",
        f"Incidence,{ltc.incidence_rate:.2%}",
        f"Average net cost,{ltc.average_net_cost:.2f}",
    ])
    if ltc.success_delta is not None:
        lines.append(f"Success lost to LTC,{ltc.success_delta:.2%}")

    bands = percentile_bands_frame(result)
    lines.extend(["", "=== Percentiles by age ===", bands.to_csv(index=False).strip()])

    if result.gap_analysis:
        lines.extend(["", "=== Gap Analysis ==="])
        for factor in result.gap_analysis:
            lines.append(
                f"{factor.priority},{factor.name},{factor.impact},+{factor.improvement_points:.1f} pts"
            )

    return "\n".join(lines)


def format_currency(value: float, currency: str = "$") -> str:
    """Format a number as currency."""
    return f"{currency}{value:,.2f}"


def format_percentage(value: float) -> str:
    """Format a number as percentage."""
    return f"{value:.2%}"
