"""Investigation loop and single-turn conversational agent."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from agent_memory import AgentMemory
from alerts import TeamAlerter
from llm import END_TURN, CompletionError, CompletionService, generate_system_prompt, is_rate_limited
from models import ChangeEvent, LogEntry, MemoryEntry
from ticket_store import TicketStore
from tool_dispatch import (
    ToolCall,
    ToolContext,
    ToolExecutionError,
    ToolKind,
    execute_tool,
    normalize_tool_name,
    parse_tool_calls,
)

logger = logging.getLogger(__name__)

COMPLETION_PHRASE = "investigation complete"
RULE = "═" * 80


@dataclass
class ToolExecution:
    tool_call: ToolCall
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict:
        data = {"toolCall": self.tool_call.to_dict(), "result": self.result}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class InvestigationResult:
    summary: str
    tickets_created: list[dict] = field(default_factory=list)
    findings: list[str] = field(default_factory=list)
    suggested_actions: list[str] = field(default_factory=list)
    iterations: int = 0
    completed: bool = False
    error: str | None = None


@dataclass
class ConversationTurn:
    assistant_response: str
    tool_executions: list[ToolExecution] = field(default_factory=list)
    memory_state: list[MemoryEntry] = field(default_factory=list)


async def run_tool_calls(
    tool_calls: list[ToolCall], memory: AgentMemory, context: ToolContext
) -> list[ToolExecution]:
    """Execute tool calls strictly in order, recording each outcome in memory."""
    executions = []
    for call in tool_calls:
        try:
            result = await execute_tool(call.tool_name, call.arguments, context)
        except ToolExecutionError as e:
            memory.add_tool_result(call.tool_name, None, str(e))
            executions.append(ToolExecution(call, error=str(e)))
            logger.warning("✗ %s failed: %s", call.tool_name, e)
            continue
        except Exception as e:
            # A tool's own runtime failure is reported back to the model.
            memory.add_tool_result(call.tool_name, None, f"{type(e).__name__}: {e}")
            executions.append(ToolExecution(call, error=str(e)))
            logger.exception("✗ %s raised", call.tool_name)
            continue

        memory.add_tool_result(call.tool_name, result)
        executions.append(ToolExecution(call, result=result))
        logger.info("✓ %s executed successfully", call.tool_name)
    return executions


def _is_ticket_creation(execution: ToolExecution) -> bool:
    if execution.error or not isinstance(execution.result, dict):
        return False
    try:
        kind = normalize_tool_name(execution.tool_call.tool_name)
    except ToolExecutionError:
        return False
    return kind is ToolKind.CREATE_TICKET and bool(execution.result.get("success"))


class LogTriageAgent:
    """Runs an autonomous investigation over one log set."""

    def __init__(
        self,
        log_set_id,
        logs: list[LogEntry],
        all_logs: list[LogEntry],
        recent_changes: list[ChangeEvent],
        ticket_store: TicketStore,
        completion_service: CompletionService,
        alerter: TeamAlerter | None = None,
        max_iterations: int = 10,
        iteration_delay: float = 0.5,
        rate_limit_backoff: float = 2.0,
        memory_max_tokens: int = 8000,
    ):
        self.log_set_id = log_set_id
        self.completion_service = completion_service
        self.max_iterations = max_iterations
        self.iteration_delay = iteration_delay
        self.rate_limit_backoff = rate_limit_backoff
        self.context = ToolContext(
            all_logs=all_logs,
            recent_changes=recent_changes,
            ticket_store=ticket_store,
            alerter=alerter or TeamAlerter(),
        )
        self.memory = AgentMemory(
            generate_system_prompt(log_set_id), logs, recent_changes, max_tokens=memory_max_tokens
        )

    async def run(self) -> InvestigationResult:
        logger.info("\n%s\nStarting Log Triage Agent - Log Set #%s\n%s", RULE, self.log_set_id, RULE)
        try:
            result = await self._investigate()
        except Exception as e:
            logger.exception("Agent error")
            result = InvestigationResult(summary="", error=str(e))

        result.summary = self.format_result(result)
        return result

    async def _investigate(self) -> InvestigationResult:
        result = InvestigationResult(summary="")
        rate_limit_retries = 0

        while result.iterations < self.max_iterations and not result.completed:
            result.iterations += 1
            logger.info("→ Iteration %d/%d", result.iterations, self.max_iterations)

            try:
                completion = await self.completion_service.complete(
                    self.memory.get_system_prompt(),
                    self.memory.get_formatted_messages_for_llm(),
                )
            except CompletionError as e:
                if is_rate_limited(e) and result.iterations < self.max_iterations:
                    delay = self.rate_limit_backoff * (2 ** rate_limit_retries)
                    rate_limit_retries += 1
                    logger.warning("Rate limited, retrying in %.1fs", delay)
                    await asyncio.sleep(delay)
                    continue
                logger.error("Completion failed in iteration %d: %s", result.iterations, e)
                result.error = str(e)
                break

            rate_limit_retries = 0
            text = completion.text or ""
            self.memory.add_assistant_message(text)
            logger.info("Agent: %.150s", text)

            tool_calls = parse_tool_calls(text)
            if tool_calls:
                logger.info("Tools called: %s", ", ".join(c.tool_name for c in tool_calls))
                executions = await run_tool_calls(tool_calls, self.memory, self.context)
                result.tickets_created.extend(
                    e.result["ticket"] for e in executions if _is_ticket_creation(e)
                )
                result.findings.extend(
                    e.result["analysis"] for e in executions
                    if not e.error and isinstance(e.result, dict) and e.result.get("analysis")
                )

            # Vendors report a plain stop even on responses that issue tool calls,
            # so end_turn only ends the loop when there are no results to read back.
            if COMPLETION_PHRASE in text.lower() or (completion.stop_reason == END_TURN and not tool_calls):
                result.completed = True
                logger.info("✓ Investigation complete")
            elif result.iterations < self.max_iterations:
                await asyncio.sleep(self.iteration_delay)

        if not result.completed and result.error is None:
            logger.warning("Investigation stopped after %d iterations", result.iterations)
        result.suggested_actions = self._extract_suggested_actions()
        return result

    def _extract_suggested_actions(self) -> list[str]:
        return [
            entry.content
            for entry in self.memory.get_messages()[2:]
            if entry.role == "assistant" and entry.content and "suggest" in entry.content.lower()
        ]

    def format_result(self, result: InvestigationResult) -> str:
        lines = [RULE, "INVESTIGATION SUMMARY", RULE, ""]
        if result.error:
            lines.append(f"Investigation failed: {result.error}")
        else:
            lines.append(f"Log Set #{self.log_set_id} Investigation Complete")
        lines.append(f"Iterations: {result.iterations}/{self.max_iterations}")
        lines.append(f"Tickets Created: {len(result.tickets_created)}")

        if result.tickets_created:
            lines.append("")
            lines.append("Tickets Created:")
            for ticket in result.tickets_created:
                lines.append(f"  • [{ticket['severity'].upper()}] {ticket['title']} ({ticket['id']})")

        if result.suggested_actions:
            lines.append("")
            lines.append("Suggested Actions:")
            for action in result.suggested_actions[:3]:
                lines.append(f"  • {action[:70]}...")

        lines.append("")
        lines.append(RULE)
        return "\n".join(lines)


class ConversationalAgent:
    """Handles one user message per call on top of a restored memory."""

    def __init__(
        self,
        memory: AgentMemory,
        all_logs: list[LogEntry],
        recent_changes: list[ChangeEvent],
        ticket_store: TicketStore,
        completion_service: CompletionService,
        alerter: TeamAlerter | None = None,
    ):
        self.memory = memory
        self.completion_service = completion_service
        self.context = ToolContext(
            all_logs=all_logs,
            recent_changes=recent_changes,
            ticket_store=ticket_store,
            alerter=alerter or TeamAlerter(),
        )

    async def process_user_message(self, message: str) -> ConversationTurn:
        self.memory.add_user_message(message)

        completion = await self.completion_service.complete(
            self.memory.get_system_prompt(),
            self.memory.get_formatted_messages_for_llm(),
        )
        text = completion.text or ""
        self.memory.add_assistant_message(text)

        executions = await run_tool_calls(parse_tool_calls(text), self.memory, self.context)
        return ConversationTurn(
            assistant_response=text,
            tool_executions=executions,
            memory_state=self.memory.get_messages(),
        )
