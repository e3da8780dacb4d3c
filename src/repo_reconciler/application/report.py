"""Human-readable per-field breakdown of a reconciliation run."""

from typing import List, Optional

from repo_reconciler.domain.models import (
    DiffResult,
    FieldOutcome,
    FieldValue,
    ReconcileResult,
)


def _format_value(value: Optional[FieldValue]) -> str:
    if value is None:
        return "(unset)"
    if isinstance(value, frozenset):
        return "[" + ", ".join(sorted(value)) + "]"
    return repr(value)


def _format_outcome(outcome: FieldOutcome) -> str:
    line = f"  {outcome.field}: {outcome.status.value}"
    if outcome.reason:
        line += f" ({outcome.reason})"
    return line


def render_diff(diff: DiffResult) -> List[str]:
    if not diff:
        return ["No differences."]
    lines = ["Differences:"]
    for field, entry in sorted(diff.entries.items()):
        if field == "topics":
            lines.append(f"  topics: missing {_format_value(entry.missing)} (remote has {_format_value(entry.remote)})")
        else:
            lines.append(f"  {field}: {_format_value(entry.remote)} -> {_format_value(entry.canonical)}")
    return lines


def render_text(result: ReconcileResult) -> str:
    """Renders the diff and, for real runs, the apply and verify breakdowns."""
    header = f"Repository {result.identifier}"
    if result.dry_run:
        header += " (dry run, nothing applied)"
    lines = [header]
    lines.extend(render_diff(result.diff))

    if result.apply_report is not None and result.diff:
        lines.append("Apply:")
        lines.extend(_format_outcome(outcome) for _, outcome in sorted(result.apply_report.outcomes.items()))

    if result.verify_report is not None:
        lines.append(f"Verify ({result.verify_report.attempts} attempt(s)):")
        lines.extend(_format_outcome(outcome) for _, outcome in sorted(result.verify_report.outcomes.items()))

    if not result.dry_run:
        lines.append("Result: " + ("ok" if result.exit_code == 0 else "needs manual follow-up"))
    return "\n".join(lines)
