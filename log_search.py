"""Flat and multi-hop search over a log corpus.

Log entries have no id, so every dedupe here is by full structural equality
(a canonical JSON rendering of the entry).
"""

import json
from dataclasses import dataclass, field
from typing import Iterable

from models import LogEntry

IDENTIFIER_PREFIXES = {
    "request_id": "req",
    "user_id": "usr",
    "batch_id": "bat",
    "source_id": "src",
}


@dataclass
class SearchCriteria:
    request_id: str | None = None
    user_id: str | None = None
    batch_id: str | None = None
    source_id: str | None = None
    service: str | None = None
    level: str | None = None
    keyword: str | None = None
    time_range_start: str | None = None
    time_range_end: str | None = None
    recursive: bool = False


@dataclass
class SearchResult:
    logs: list[LogEntry] = field(default_factory=list)
    related_identifiers: list[str] = field(default_factory=list)


def structural_key(log: LogEntry) -> str:
    return json.dumps(log, sort_keys=True, default=str)


def dedupe_logs(logs: Iterable[LogEntry]) -> list[LogEntry]:
    """Drop structural duplicates, keeping the first occurrence."""
    seen = set()
    unique = []
    for log in logs:
        key = structural_key(log)
        if key in seen:
            continue
        seen.add(key)
        unique.append(log)
    return unique


def matches(log: LogEntry, criteria: SearchCriteria) -> bool:
    exact_fields = (
        ("request_id", criteria.request_id),
        ("user_id", criteria.user_id),
        ("batch_id", criteria.batch_id),
        ("source_id", criteria.source_id),
        ("service", criteria.service),
        ("level", criteria.level),
    )
    for name, wanted in exact_fields:
        if wanted and log.get(name) != wanted:
            return False

    if criteria.keyword:
        if criteria.keyword.lower() not in str(log.get("message", "")).lower():
            return False

    time = str(log.get("time", ""))
    if criteria.time_range_start and time < criteria.time_range_start:
        return False
    if criteria.time_range_end and time > criteria.time_range_end:
        return False
    return True


def collect_identifiers(logs: Iterable[LogEntry]) -> list[str]:
    identifiers = set()
    for log in logs:
        for name, prefix in IDENTIFIER_PREFIXES.items():
            value = log.get(name)
            if value:
                identifiers.add(f"{prefix}:{value}")
    return sorted(identifiers)


def _logs_with(corpus: list[LogEntry], name: str, values: Iterable[str]) -> list[LogEntry]:
    wanted = set(values)
    return [log for log in corpus if log.get(name) in wanted]


def _values_of(logs: Iterable[LogEntry], name: str) -> list[str]:
    # Preserve first-seen order so results are deterministic.
    values = {}
    for log in logs:
        value = log.get(name)
        if value:
            values[value] = None
    return list(values)


def expand_batch(corpus: list[LogEntry], batch_id: str) -> list[LogEntry]:
    """Follow a batch to its users, then to every source seen so far.

    A failed batch often names only user ids, while the root cause (for
    example an expired connector token) is logged against a source id that
    only shows up on the users' other log lines.
    """
    batch_logs = _logs_with(corpus, "batch_id", [batch_id])
    user_logs = _logs_with(corpus, "user_id", _values_of(batch_logs, "user_id"))
    found = batch_logs + user_logs
    source_logs = _logs_with(corpus, "source_id", _values_of(found, "source_id"))
    return dedupe_logs(found + source_logs)


def search_logs(corpus: list[LogEntry], criteria: SearchCriteria) -> SearchResult:
    results = [log for log in corpus if matches(log, criteria)]

    if criteria.recursive and criteria.batch_id:
        results = dedupe_logs(results + expand_batch(corpus, criteria.batch_id))

    return SearchResult(logs=results, related_identifiers=collect_identifiers(results))


def extract_error_context(
    corpus: list[LogEntry], target: LogEntry, window_size: int = 3
) -> list[LogEntry]:
    """Return the logs surrounding ``target``, clipped at the corpus edges."""
    target_key = structural_key(target)
    index = next(
        (i for i, log in enumerate(corpus) if structural_key(log) == target_key),
        None,
    )
    if index is None:
        return [target]

    start = max(0, index - window_size)
    end = min(len(corpus), index + window_size + 1)
    return corpus[start:end]
