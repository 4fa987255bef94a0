"""Conversation memory for the triage agent, kept under a token budget.

The first two entries (system prompt and initial log context) are never
compressed. When usage passes 80% of the budget, everything between them and
the five most recent entries is replaced by a one-line placeholder.
"""

import json
import math
from typing import Any, Callable

from models import ChangeEvent, LogEntry, MemoryEntry, MemoryState, ToolResult, utc_now

DEFAULT_MAX_TOKENS = 8000
COMPRESSION_THRESHOLD = 0.8
MIN_ENTRIES_TO_COMPRESS = 10
PROTECTED_ENTRIES = 2
RECENT_ENTRIES_KEPT = 5


def estimate_tokens(text: str) -> int:
    """Rough token count: four UTF-8 bytes per token."""
    return math.ceil(len(text.encode("utf-8")) / 4)


class AgentMemory:
    def __init__(
        self,
        system_prompt: str,
        initial_logs: list[LogEntry],
        recent_changes: list[ChangeEvent],
        max_tokens: int = DEFAULT_MAX_TOKENS,
        token_estimator: Callable[[str], int] = estimate_tokens,
    ):
        self.system_prompt = system_prompt
        self.initial_logs = initial_logs
        self.recent_changes = recent_changes
        self.max_tokens = max_tokens
        self.estimate_tokens = token_estimator
        self.entries: list[MemoryEntry] = []
        self.approximate_tokens_used = 0
        self._initialize()

    def _initialize(self):
        timestamp = utc_now()
        logs_context = (
            f"Initial logs (last {len(self.initial_logs)} received):\n"
            f"{json.dumps(self.initial_logs, indent=2)}\n\n"
            f"Recent changes:\n{json.dumps(self.recent_changes, indent=2)}"
        )
        self.entries = [
            MemoryEntry(role="system", content=self.system_prompt, timestamp=timestamp),
            MemoryEntry(role="user", content=logs_context, timestamp=timestamp),
        ]
        self.approximate_tokens_used = self.estimate_tokens(self.system_prompt + logs_context)

    def _append(self, entry: MemoryEntry, counted_text: str):
        self.entries.append(entry)
        self.approximate_tokens_used += self.estimate_tokens(counted_text)
        self._compress_if_needed()

    def add_user_message(self, content: str):
        self._append(MemoryEntry(role="user", content=content, timestamp=utc_now()), content)

    def add_assistant_message(self, content: str):
        self._append(MemoryEntry(role="assistant", content=content, timestamp=utc_now()), content)

    def add_tool_result(self, tool_name: str, result: Any, error: str | None = None):
        if error:
            result_text = f"Error: {error}"
        else:
            result_text = f"Result: {json.dumps(result, default=str)}"

        entry = MemoryEntry(
            role="tool",
            content=f'Tool "{tool_name}" executed: {result_text}',
            tool_results=[
                ToolResult(
                    tool_name=tool_name,
                    status="error" if error else "success",
                    result=result,
                    error=error,
                )
            ],
            timestamp=utc_now(),
        )
        self._append(entry, result_text)

    def _compress_if_needed(self):
        if self.approximate_tokens_used <= self.max_tokens * COMPRESSION_THRESHOLD:
            return
        if len(self.entries) < MIN_ENTRIES_TO_COMPRESS:
            return

        protected = self.entries[:PROTECTED_ENTRIES]
        middle = self.entries[PROTECTED_ENTRIES:-RECENT_ENTRIES_KEPT]
        recent = self.entries[-RECENT_ENTRIES_KEPT:]

        summary = MemoryEntry(
            role="user",
            content=f"[Previous conversation - {len(middle)} turns summarized]",
            timestamp=utc_now(),
        )
        self.entries = protected + [summary] + recent
        self.approximate_tokens_used = self.estimate_tokens(
            "\n".join(e.content or "" for e in self.entries)
        )

    def get_messages(self) -> list[MemoryEntry]:
        return list(self.entries)

    def get_formatted_messages_for_llm(self) -> list[dict[str, str]]:
        return [
            {"role": entry.role, "content": entry.content}
            for entry in self.entries
            if entry.role != "system" and entry.content
        ]

    def get_system_prompt(self) -> str:
        return self.system_prompt

    def serialize(self) -> dict:
        state = MemoryState(
            entries=self.entries,
            approximate_tokens_used=self.approximate_tokens_used,
        )
        return state.to_json_dict()

    @classmethod
    def restore(
        cls,
        system_prompt: str,
        initial_logs: list[LogEntry],
        recent_changes: list[ChangeEvent],
        state: dict | MemoryState | None,
        **kwargs,
    ) -> "AgentMemory":
        """Rebuild a memory from ``serialize()`` output.

        An empty state (a session that has not exchanged any message yet)
        keeps the freshly initialized system prompt and log context.
        """
        memory = cls(system_prompt, initial_logs, recent_changes, **kwargs)
        if state is None:
            return memory
        if not isinstance(state, MemoryState):
            state = MemoryState.model_validate(state)
        if state.entries:
            memory.entries = list(state.entries)
            memory.approximate_tokens_used = state.approximate_tokens_used
        return memory

    def clear(self):
        self._initialize()
