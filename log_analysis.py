"""Summaries over a log corpus for the logs view and ticket drafting."""

from collections import Counter
from dataclasses import dataclass, field

from models import LogEntry

LEVELS = ("ERROR", "WARN", "INFO", "DEBUG")


@dataclass
class LogStatistics:
    total: int = 0
    errors: int = 0
    warnings: int = 0
    info: int = 0
    debug: int = 0
    services: dict[str, int] = field(default_factory=dict)
    time_range: tuple[str, str] | None = None

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "errors": self.errors,
            "warnings": self.warnings,
            "info": self.info,
            "debug": self.debug,
            "services": self.services,
            "timeRange": (
                {"start": self.time_range[0], "end": self.time_range[1]} if self.time_range else None
            ),
        }


@dataclass
class LogPattern:
    message: str
    count: int
    first_occurrence: str
    last_occurrence: str
    services: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "count": self.count,
            "firstOccurrence": self.first_occurrence,
            "lastOccurrence": self.last_occurrence,
            "services": self.services,
        }


def get_log_statistics(logs: list[LogEntry]) -> LogStatistics:
    levels = Counter(log.get("level") for log in logs)
    services = Counter(str(log.get("service", "unknown")) for log in logs)
    time_range = (str(logs[0].get("time", "")), str(logs[-1].get("time", ""))) if logs else None
    return LogStatistics(
        total=len(logs),
        errors=levels["ERROR"],
        warnings=levels["WARN"],
        info=levels["INFO"],
        debug=levels["DEBUG"],
        services=dict(services),
        time_range=time_range,
    )


def _patterns(logs: list[LogEntry], level: str) -> list[LogPattern]:
    patterns: dict[str, LogPattern] = {}
    for log in logs:
        if log.get("level") != level:
            continue
        message = str(log.get("message", ""))
        time = str(log.get("time", ""))
        pattern = patterns.get(message)
        if pattern is None:
            pattern = patterns[message] = LogPattern(message, 0, time, time)
        pattern.count += 1
        pattern.last_occurrence = time
        service = str(log.get("service", "unknown"))
        if service not in pattern.services:
            pattern.services.append(service)
    # sorted() is stable, so equal counts keep first-seen order.
    return sorted(patterns.values(), key=lambda p: p.count, reverse=True)


def identify_error_patterns(logs: list[LogEntry]) -> list[LogPattern]:
    return _patterns(logs, "ERROR")


def identify_warning_patterns(logs: list[LogEntry]) -> list[LogPattern]:
    return _patterns(logs, "WARN")


def _minutes(time: str) -> int | None:
    parts = str(time).split(":")
    try:
        return int(parts[0]) * 60 + int(parts[1])
    except (IndexError, ValueError):
        return None


def find_error_clusters(logs: list[LogEntry]) -> list[list[LogEntry]]:
    """Group consecutive errors no more than a minute apart.

    Only groups of two or more errors are returned.
    """
    clusters = []
    current: list[LogEntry] = []
    previous_minute = None

    for log in logs:
        if log.get("level") != "ERROR":
            continue
        minute = _minutes(log.get("time", ""))
        if current and (minute is None or previous_minute is None or abs(minute - previous_minute) > 1):
            clusters.append(current)
            current = []
        current.append(log)
        previous_minute = minute

    if current:
        clusters.append(current)
    return [cluster for cluster in clusters if len(cluster) > 1]


def summarize_logs(logs: list[LogEntry], limit: int = 5) -> str:
    stats = get_log_statistics(logs)
    lines = [
        "Log Summary:",
        f"- Total logs: {stats.total}",
        f"- Errors: {stats.errors}, Warnings: {stats.warnings}, Info: {stats.info}",
        f"- Services: {', '.join(stats.services)}",
    ]

    error_patterns = identify_error_patterns(logs)
    if error_patterns:
        lines.append("")
        lines.append("Top Error Patterns:")
        for i, pattern in enumerate(error_patterns[:limit], 1):
            lines.append(f'{i}. "{pattern.message}" ({pattern.count}x in {", ".join(pattern.services)})')

    warning_patterns = identify_warning_patterns(logs)
    if warning_patterns:
        lines.append("")
        lines.append("Top Warning Patterns:")
        for i, pattern in enumerate(warning_patterns[:limit], 1):
            lines.append(f'{i}. "{pattern.message}" ({pattern.count}x)')

    return "\n".join(lines)


def filter_logs(
    logs: list[LogEntry],
    services: list[str] | None = None,
    levels: list[str] | None = None,
    keyword: str | None = None,
    time_start: str | None = None,
    time_end: str | None = None,
) -> list[LogEntry]:
    results = list(logs)
    if services:
        results = [log for log in results if log.get("service") in services]
    if levels:
        wanted = {level.upper() for level in levels}
        results = [log for log in results if log.get("level") in wanted]
    if keyword:
        keyword = keyword.lower()
        results = [log for log in results if keyword in str(log.get("message", "")).lower()]
    if time_start:
        results = [log for log in results if str(log.get("time", "")) >= time_start]
    if time_end:
        results = [log for log in results if str(log.get("time", "")) <= time_end]
    return results
