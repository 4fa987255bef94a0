"""Agent tools: argument schemas, directive parsing and execution.

The model asks for a tool by embedding a block like this in its reply:

    <TOOL_CALL>
    {"toolName": "searchLogs", "arguments": {"batchId": "batch_20250117_A", "recursive": true}}
    </TOOL_CALL>

A reply may hold any number of blocks. Blocks that are not valid JSON, or
that do not carry a string ``toolName`` and an object ``arguments``, are
dropped without affecting the others. Argument validation happens at
execution time, so a bad argument is reported back to the model as a tool
error rather than being lost.
"""

import copy
import enum
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from alerts import MAX_SAMPLE_LOGS, Alert, TeamAlerter
from change_correlation import check_recent_changes
from log_search import SearchCriteria, search_logs
from models import ChangeEvent, LogEntry, LogLevel, Severity
from ticket_store import TicketStore

logger = logging.getLogger(__name__)

TOOL_CALL_OPEN = "<TOOL_CALL>"
TOOL_CALL_CLOSE = "</TOOL_CALL>"
TOOL_CALL_PATTERN = re.compile(
    re.escape(TOOL_CALL_OPEN) + r"(.*?)" + re.escape(TOOL_CALL_CLOSE), re.DOTALL
)
CODE_FENCE_PATTERN = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")

TICKET_EVIDENCE_LOGS = 10


class ToolExecutionError(Exception):
    """A tool call that could not be carried out."""


class UnknownToolError(ToolExecutionError):
    pass


class ToolKind(str, enum.Enum):
    SEARCH_LOGS = "searchLogs"
    CHECK_RECENT_CHANGES = "checkRecentChanges"
    CREATE_TICKET = "createTicket"
    ALERT_TEAM = "alertTeam"


def normalize_tool_name(name: str) -> ToolKind:
    """Map ``searchLogs``, ``search_logs`` or ``SEARCH_LOGS`` to the same kind."""
    folded = re.sub(r"[\s_\-]", "", str(name)).lower()
    for kind in ToolKind:
        if kind.value.lower() == folded:
            return kind
    raise UnknownToolError(f"Unknown tool: {name}")


class ToolArguments(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchLogsArgs(ToolArguments):
    request_id: str | None = None
    user_id: str | None = None
    batch_id: str | None = None
    source_id: str | None = None
    service: str | None = None
    level: LogLevel | None = None
    keyword: str | None = None
    time_range_start: str | None = None
    time_range_end: str | None = None
    recursive: bool = False


class CheckRecentChangesArgs(ToolArguments):
    time_range_start: str | None = None
    time_range_end: str | None = None
    keyword: str | None = None
    change_type: str | None = None


class CreateTicketArgs(ToolArguments):
    title: str
    description: str
    severity: Severity
    affected_services: list[str]
    suggestions: list[str] = []


class AlertTeamArgs(ToolArguments):
    severity: Severity
    affected_services: list[str]
    issue_summary: str


@dataclass
class ToolCall:
    tool_name: str
    arguments: dict[str, Any]

    def to_dict(self) -> dict:
        return {"toolName": self.tool_name, "arguments": self.arguments}


@dataclass
class ToolContext:
    all_logs: list[LogEntry]
    recent_changes: list[ChangeEvent]
    ticket_store: TicketStore
    alerter: TeamAlerter = field(default_factory=TeamAlerter)


async def _search_logs(args: SearchLogsArgs, context: ToolContext) -> dict:
    criteria = SearchCriteria(**args.model_dump())
    result = search_logs(context.all_logs, criteria)
    return {
        "logsFound": len(result.logs),
        "logs": result.logs,
        "relatedIdentifiers": result.related_identifiers,
    }


async def _check_recent_changes(args: CheckRecentChangesArgs, context: ToolContext) -> dict:
    result = check_recent_changes(context.recent_changes, context.all_logs, **args.model_dump())
    return {
        "relevantChanges": result.relevant_changes,
        "correlatedErrors": result.correlated_errors,
        "analysis": result.analysis,
    }


async def _create_ticket(args: CreateTicketArgs, context: ToolContext) -> dict:
    fields = args.model_dump()
    # Evidence is a snapshot of the newest logs, whatever the caller searched.
    fields["related_logs"] = copy.deepcopy(context.all_logs[-TICKET_EVIDENCE_LOGS:])
    ticket = await context.ticket_store.create_ticket(fields)
    return {"success": True, "ticketId": ticket.id, "ticket": ticket.to_json_dict()}


async def _alert_team(args: AlertTeamArgs, context: ToolContext) -> dict:
    services = set(args.affected_services)
    samples = [
        log for log in context.all_logs
        if log.get("level") == "ERROR" and log.get("service") in services
    ][-MAX_SAMPLE_LOGS:]
    alert = Alert(
        severity=args.severity,
        affected_services=args.affected_services,
        issue_summary=args.issue_summary,
        relevant_logs=samples,
    )
    return await context.alerter.alert_team(alert)


@dataclass(frozen=True)
class ToolDefinition:
    kind: ToolKind
    description: str
    arguments: type[ToolArguments]
    handler: Callable[[Any, ToolContext], Awaitable[dict]]


TOOLS = {
    ToolKind.SEARCH_LOGS: ToolDefinition(
        ToolKind.SEARCH_LOGS,
        "Search through logs by various criteria (request ID, user ID, batch ID, source ID, "
        "service name, level, keyword, time range). Set recursive=true with a batchId to follow "
        "the batch to its users and their sources.",
        SearchLogsArgs,
        _search_logs,
    ),
    ToolKind.CHECK_RECENT_CHANGES: ToolDefinition(
        ToolKind.CHECK_RECENT_CHANGES,
        "Check for recent system changes (deployments, config changes, migrations) and "
        "correlate them with errors in logs.",
        CheckRecentChangesArgs,
        _check_recent_changes,
    ),
    ToolKind.CREATE_TICKET: ToolDefinition(
        ToolKind.CREATE_TICKET,
        "Create a support ticket to track an issue. Include title, description, severity "
        "level, and affected services.",
        CreateTicketArgs,
        _create_ticket,
    ),
    ToolKind.ALERT_TEAM: ToolDefinition(
        ToolKind.ALERT_TEAM,
        "Send an alert to the team about a critical issue. Specify severity, affected "
        "services, and issue summary.",
        AlertTeamArgs,
        _alert_team,
    ),
}


def _directive_body(raw: str) -> str:
    # An unterminated block followed by a good one: keep only the innermost opening.
    body = raw.rsplit(TOOL_CALL_OPEN, 1)[-1].strip()
    return CODE_FENCE_PATTERN.sub("", body).strip()


def parse_tool_calls(text: str) -> list[ToolCall]:
    """Extract every well-formed tool call directive from a model reply."""
    calls = []
    for match in TOOL_CALL_PATTERN.finditer(text or ""):
        body = _directive_body(match.group(1))
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.debug("Dropping malformed tool call block: %.200s", body)
            continue

        if not isinstance(payload, dict):
            continue
        tool_name = payload.get("toolName")
        arguments = payload.get("arguments")
        if not isinstance(tool_name, str) or not tool_name.strip():
            continue
        if not isinstance(arguments, dict):
            continue
        calls.append(ToolCall(tool_name=tool_name.strip(), arguments=arguments))
    return calls


async def execute_tool(tool_name: str, arguments: dict[str, Any], context: ToolContext) -> dict:
    """Validate the arguments for ``tool_name`` and run it."""
    tool = TOOLS[normalize_tool_name(tool_name)]
    try:
        args = tool.arguments.model_validate(arguments or {})
    except ValidationError as e:
        raise ToolExecutionError(f"Invalid arguments for {tool.kind.value}: {e}") from e
    return await tool.handler(args, context)


def describe_tools() -> str:
    """Tool list and directive format for the system prompt."""
    lines = ["AVAILABLE TOOLS:"]
    for tool in TOOLS.values():
        lines.append(f"- {tool.kind.value}: {tool.description}")
        for name, info in tool.arguments.model_fields.items():
            alias = info.alias or name
            required = "required" if info.is_required() else "optional"
            lines.append(f"  - {alias} ({required})")

    lines.extend([
        "",
        "When using tools, format your response with <TOOL_CALL> blocks like this:",
        TOOL_CALL_OPEN,
        '{"toolName": "searchLogs", "arguments": {"keyword": "error"}}',
        TOOL_CALL_CLOSE,
        "You may include several blocks in one response; they run in order.",
    ])
    return "\n".join(lines)
