import os

import pytest

from alerts import TeamAlerter
from llm import END_TURN, Completion
from log_sets import LogSetSource
from ticket_store import TicketStore

LOG_SETS_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "log_sets")


class ScriptedCompletionService:
    """Replays canned completions; exceptions in the script are raised."""

    def __init__(self, responses=()):
        self.responses = list(responses)
        self.calls = []

    async def complete(self, system_prompt, messages):
        self.calls.append({"system_prompt": system_prompt, "messages": [dict(m) for m in messages]})
        if not self.responses:
            return Completion("Nothing more to do. Investigation complete.", END_TURN)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return Completion(item, None)
        return item


@pytest.fixture
def scripted_completion():
    return ScriptedCompletionService


@pytest.fixture
def sample_logs():
    return [
        {"time": "10:00:00", "service": "api-gateway", "level": "INFO", "message": "Health check OK"},
        {"time": "10:00:05", "service": "auth-service", "level": "WARN", "message": "Slow token refresh",
         "request_id": "req-1"},
        {"time": "10:00:10", "service": "auth-service", "level": "ERROR", "message": "Token validation failed",
         "request_id": "req-1", "user_id": "user_1"},
        {"time": "10:00:20", "service": "order-service", "level": "ERROR", "message": "Database connection timeout",
         "request_id": "req-2"},
        {"time": "10:01:00", "service": "order-service", "level": "ERROR", "message": "Database connection timeout",
         "request_id": "req-3"},
        {"time": "10:05:00", "service": "api-gateway", "level": "DEBUG", "message": "Cache hit"},
    ]


@pytest.fixture
def batch_scenario_logs():
    logs, _ = LogSetSource(LOG_SETS_DIR).load(5)
    return logs


@pytest.fixture
def healthy_logs():
    logs, _ = LogSetSource(LOG_SETS_DIR).load(1)
    return logs


@pytest.fixture
def deployment_changes():
    return [
        {
            "timestamp": "2025-01-17T10:00:00",
            "type": "deployment",
            "description": "Deployed auth-service v2.3.1",
            "filesAffected": ["auth/token.py", "auth/session.py"],
        },
        {
            "timestamp": "2025-01-17T09:30:00",
            "type": "config_change",
            "description": "Lowered order-service pool size",
            "filesAffected": ["config/orders.yml"],
        },
    ]


@pytest.fixture
def tickets_path(tmp_path):
    return str(tmp_path / "data" / "tickets.json")


@pytest.fixture
def ticket_store(tickets_path):
    store = TicketStore(tickets_path)
    store.initialize()
    return store


@pytest.fixture
def alerter():
    return TeamAlerter()
