import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Log entries and change events stay plain dicts: they come from external
# sources, may carry extra keys, and are compared structurally.
LogEntry = dict[str, Any]
ChangeEvent = dict[str, Any]

Severity = Literal["low", "medium", "high", "critical"]
TicketStatus = Literal["open", "in-progress", "closed"]
LogLevel = Literal["ERROR", "WARN", "INFO", "DEBUG"]
Role = Literal["system", "user", "assistant", "tool"]
SessionStatus = Literal["active", "waiting", "completed"]


def utc_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Comment(CamelModel):
    id: str
    author: str
    text: str
    created_at: str


class Ticket(CamelModel):
    id: str
    title: str
    description: str
    severity: Severity
    status: TicketStatus = "open"
    affected_services: list[str] = Field(default_factory=list)
    related_logs: list[LogEntry] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    comments: list[Comment] = Field(default_factory=list)
    created_at: str
    updated_at: str


class TicketFilter(CamelModel):
    status: TicketStatus | None = None
    severity: Severity | None = None
    service: str | None = None
    keyword: str | None = None
    created_after: str | None = None
    created_before: str | None = None


class ToolResult(CamelModel):
    tool_name: str
    status: Literal["success", "error"]
    result: Any = None
    error: str | None = None


class MemoryEntry(CamelModel):
    role: Role
    content: str | None = None
    tool_results: list[ToolResult] | None = None
    timestamp: str


class MemoryState(CamelModel):
    entries: list[MemoryEntry] = Field(default_factory=list)
    approximate_tokens_used: int = 0


class LogsContext(CamelModel):
    logs: list[LogEntry] = Field(default_factory=list)
    all_logs: list[LogEntry] = Field(default_factory=list)
    recent_changes: list[ChangeEvent] = Field(default_factory=list)
    source: str


class ChatSession(CamelModel):
    id: str
    created_at: str
    last_activity: str
    logs_context: LogsContext
    memory_state: MemoryState = Field(default_factory=MemoryState)
    provider: str
    model: str
    status: SessionStatus = "active"
