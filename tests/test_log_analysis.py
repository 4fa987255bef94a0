import os

import pytest

from log_analysis import (
    filter_logs,
    find_error_clusters,
    get_log_statistics,
    identify_error_patterns,
    identify_warning_patterns,
    summarize_logs,
)
from log_sets import LogSetNotFoundError, LogSetSource

BUNDLED_LOG_SETS = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "log_sets")


class TestStatistics:
    def test_counts(self, sample_logs):
        stats = get_log_statistics(sample_logs)
        assert (stats.total, stats.errors, stats.warnings, stats.info, stats.debug) == (6, 3, 1, 1, 1)
        assert stats.services == {"api-gateway": 2, "auth-service": 2, "order-service": 2}
        assert stats.time_range == ("10:00:00", "10:05:00")

    def test_empty(self):
        stats = get_log_statistics([])
        assert stats.total == 0
        assert stats.to_dict()["timeRange"] is None


class TestPatterns:
    def test_error_patterns_sorted_by_count(self, sample_logs):
        patterns = identify_error_patterns(sample_logs)
        assert [p.message for p in patterns] == ["Database connection timeout", "Token validation failed"]
        top = patterns[0]
        assert (top.count, top.first_occurrence, top.last_occurrence) == (2, "10:00:20", "10:01:00")
        assert top.services == ["order-service"]

    def test_warning_patterns(self, sample_logs):
        patterns = identify_warning_patterns(sample_logs)
        assert [p.to_dict()["message"] for p in patterns] == ["Slow token refresh"]

    def test_scenario_patterns(self, batch_scenario_logs):
        patterns = identify_error_patterns(batch_scenario_logs)
        counts = {p.message: p.count for p in patterns}
        assert counts["Failed to enrich user data"] == 5
        assert counts["Zendesk token expired"] == 3


class TestClusters:
    def test_errors_within_a_minute_cluster(self, sample_logs):
        clusters = find_error_clusters(sample_logs)
        assert len(clusters) == 1
        assert [log["time"] for log in clusters[0]] == ["10:00:10", "10:00:20", "10:01:00"]

    def test_single_errors_are_not_clusters(self):
        logs = [
            {"time": "10:00:00", "level": "ERROR", "message": "a"},
            {"time": "10:05:00", "level": "ERROR", "message": "b"},
        ]
        assert find_error_clusters(logs) == []

    def test_no_errors(self, healthy_logs):
        assert find_error_clusters(healthy_logs) == []


def test_summary(sample_logs):
    summary = summarize_logs(sample_logs)
    assert summary.startswith("Log Summary:")
    assert "- Errors: 3, Warnings: 1, Info: 1" in summary
    assert '1. "Database connection timeout" (2x in order-service)' in summary
    assert "Top Warning Patterns:" in summary


def test_summary_of_healthy_logs(healthy_logs):
    summary = summarize_logs(healthy_logs)
    assert "Top Error Patterns" not in summary


class TestFilterLogs:
    def test_combined_filters(self, sample_logs):
        result = filter_logs(sample_logs, services=["order-service", "auth-service"], levels=["error"])
        assert len(result) == 3

    def test_keyword_and_time(self, sample_logs):
        result = filter_logs(sample_logs, keyword="token", time_start="10:00:06")
        assert [log["time"] for log in result] == ["10:00:10"]

    def test_no_filters(self, sample_logs):
        assert filter_logs(sample_logs) == sample_logs


class TestLogSets:
    def test_bundled_sets(self):
        source = LogSetSource(BUNDLED_LOG_SETS)
        assert {"1", "5"} <= set(source.available())
        logs, changes = source.load("5")
        assert len(logs) == 30
        assert changes == []
        assert all("message" in log for log in logs)

    def test_missing_set(self, tmp_path):
        with pytest.raises(LogSetNotFoundError):
            LogSetSource(str(tmp_path)).load(99)

    def test_path_traversal_is_rejected(self, tmp_path):
        with pytest.raises(LogSetNotFoundError):
            LogSetSource(str(tmp_path)).load("../secrets")

    def test_custom_set(self, tmp_path):
        (tmp_path / "log_set_demo.json").write_text(
            '{"logs": [{"time": "1", "level": "INFO", "service": "a", "message": "m"}],'
            ' "recentChanges": [{"timestamp": "t", "type": "deployment"}]}'
        )
        logs, changes = LogSetSource(str(tmp_path)).load("demo")
        assert len(logs) == 1
        assert changes[0]["type"] == "deployment"

    def test_missing_directory(self, tmp_path):
        assert LogSetSource(str(tmp_path / "nope")).available() == []
