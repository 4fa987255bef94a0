"""Correlate recent system changes with the errors that followed them.

Log times are usually bare time-of-day strings ("13:43:26"). They are placed
on the same day as the change they are compared against (or today when the
change has no date either), so a window that crosses midnight is not
detected. Range filters compare timestamps as plain strings.
"""

import datetime
from dataclasses import dataclass, field

from log_search import dedupe_logs
from models import ChangeEvent, LogEntry

CORRELATION_WINDOW = datetime.timedelta(seconds=120)
ANALYSIS_ERROR_LIMIT = 5


@dataclass
class CorrelationResult:
    relevant_changes: list[ChangeEvent] = field(default_factory=list)
    correlated_errors: list[LogEntry] = field(default_factory=list)
    analysis: str = ""


def resolve_time(value: str, reference_date: datetime.date | None = None) -> datetime.datetime | None:
    """Parse a full ISO timestamp or a bare time-of-day onto ``reference_date``."""
    value = (value or "").strip()
    if not value:
        return None
    try:
        return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        time_of_day = datetime.time.fromisoformat(value)
    except ValueError:
        return None
    return datetime.datetime.combine(reference_date or datetime.date.today(), time_of_day)


def _same_clock(moment: datetime.datetime, reference: datetime.datetime) -> datetime.datetime:
    # Bare log times carry no zone; read them in the change's zone.
    if moment.tzinfo is None and reference.tzinfo is not None:
        return moment.replace(tzinfo=reference.tzinfo)
    if moment.tzinfo is not None and reference.tzinfo is None:
        return moment.replace(tzinfo=None)
    return moment


def filter_changes(
    changes: list[ChangeEvent],
    change_type: str | None = None,
    time_range_start: str | None = None,
    time_range_end: str | None = None,
    keyword: str | None = None,
) -> list[ChangeEvent]:
    relevant = list(changes)

    if change_type:
        wanted = change_type.lower()
        relevant = [c for c in relevant if wanted in str(c.get("type", "")).lower()]

    if time_range_start:
        relevant = [c for c in relevant if str(c.get("timestamp", "")) >= time_range_start]
    if time_range_end:
        relevant = [c for c in relevant if str(c.get("timestamp", "")) <= time_range_end]

    if keyword:
        wanted = keyword.lower()
        relevant = [
            c for c in relevant
            if wanted in str(c.get("description", "")).lower()
            or any(wanted in str(f).lower() for f in c.get("filesAffected", []))
        ]
    return relevant


def find_correlated_errors(logs: list[LogEntry], changes: list[ChangeEvent]) -> list[LogEntry]:
    errors = [log for log in logs if log.get("level") == "ERROR"]
    correlated = []

    for change in changes:
        change_time = resolve_time(str(change.get("timestamp", "")))
        if change_time is None:
            continue
        window_end = change_time + CORRELATION_WINDOW

        for error in errors:
            error_time = resolve_time(str(error.get("time", "")), change_time.date())
            if error_time is None:
                continue
            error_time = _same_clock(error_time, change_time)
            if change_time <= error_time <= window_end:
                correlated.append(error)

    return dedupe_logs(correlated)


def generate_change_analysis(changes: list[ChangeEvent], errors: list[LogEntry]) -> str:
    if not changes:
        return "No recent changes to analyze."

    lines = [f"Found {len(changes)} recent change(s):"]
    for change in changes:
        lines.append(f"- [{change.get('timestamp')}] {change.get('type')}: {change.get('description')}")
        lines.append(f"  Files: {', '.join(change.get('filesAffected', []))}")

    lines.append("")
    if errors:
        lines.append(f"Found {len(errors)} error(s) correlated with these changes:")
        for error in errors[:ANALYSIS_ERROR_LIMIT]:
            lines.append(f"- [{error.get('time')}] {error.get('service')}: {error.get('message')}")
    else:
        lines.append("No errors detected immediately following these changes.")
    return "\n".join(lines)


def check_recent_changes(
    changes: list[ChangeEvent],
    logs: list[LogEntry],
    change_type: str | None = None,
    time_range_start: str | None = None,
    time_range_end: str | None = None,
    keyword: str | None = None,
) -> CorrelationResult:
    if not changes:
        return CorrelationResult(analysis="No recent changes found in the system.")

    relevant = filter_changes(changes, change_type, time_range_start, time_range_end, keyword)
    errors = find_correlated_errors(logs, relevant)
    return CorrelationResult(
        relevant_changes=relevant,
        correlated_errors=errors,
        analysis=generate_change_analysis(relevant, errors),
    )


def suggest_correlation(changes: list[ChangeEvent], errors: list[LogEntry]) -> list[str]:
    """Advisory hints keyed on the kinds of change seen."""
    if not changes or not errors:
        return []

    def of_type(fragment):
        return [c for c in changes if fragment in str(c.get("type", "")).lower()]

    suggestions = []
    deployments = of_type("deploy")
    if deployments:
        suggestions.append(
            f"Recent deployment at {deployments[0].get('timestamp')} may have caused "
            f"{len(errors)} error(s). Consider rolling back if issues persist."
        )
    if of_type("config"):
        suggestions.append(
            "Configuration change detected. Verify that the new settings are compatible with the system."
        )
    if of_type("migration"):
        suggestions.append(
            "Database migration detected. Ensure all services have been restarted to load new schema."
        )
    return suggestions
