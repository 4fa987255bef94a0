import time
from collections import Counter
from typing import Any

from models import Comment, LogEntry, Severity, Ticket, TicketFilter, TicketStatus, utc_now
from ticket_store import TicketStore

TICKET_CATEGORIES = ("errors", "warnings", "performance")


class TicketService:
    """Ticket operations used by the API and by the agent tools."""

    def __init__(self, store: TicketStore):
        self.store = store

    async def create(
        self,
        title: str,
        description: str,
        severity: Severity,
        affected_services: list[str],
        suggestions: list[str] | None = None,
        related_logs: list[LogEntry] | None = None,
    ) -> Ticket:
        return await self.store.create_ticket({
            "title": title,
            "description": description,
            "severity": severity,
            "affected_services": affected_services,
            "suggestions": suggestions or [],
            "related_logs": related_logs or [],
            "status": "open",
            "comments": [],
        })

    def get_by_id(self, ticket_id: str) -> Ticket | None:
        return self.store.get_ticket(ticket_id)

    def get_all(self, ticket_filter: TicketFilter | None = None) -> list[Ticket]:
        return self.store.get_tickets(ticket_filter)

    async def update_status(self, ticket_id: str, status: TicketStatus) -> Ticket | None:
        return await self.store.update_ticket(ticket_id, {"status": status})

    async def add_comment(self, ticket_id: str, author: str, text: str) -> Ticket | None:
        ticket = self.store.get_ticket(ticket_id)
        if ticket is None:
            return None

        comment = Comment(
            id=f"CMT-{int(time.time() * 1000)}",
            author=author,
            text=text,
            created_at=utc_now(),
        )
        comments = [c.model_dump() for c in ticket.comments] + [comment.model_dump()]
        return await self.store.update_ticket(ticket_id, {"comments": comments})

    async def close_ticket(self, ticket_id: str, final_comment: str | None = None) -> Ticket | None:
        ticket = await self.store.update_ticket(ticket_id, {"status": "closed"})
        if ticket is not None and final_comment:
            ticket = await self.add_comment(ticket_id, "system", final_comment)
        return ticket

    def get_open_tickets(self) -> list[Ticket]:
        return self.store.get_tickets(TicketFilter(status="open"))

    def get_critical_tickets(self) -> list[Ticket]:
        return self.store.get_tickets(TicketFilter(severity="critical"))

    def get_tickets_by_service(self, service: str) -> list[Ticket]:
        return self.store.get_tickets(TicketFilter(service=service))

    def get_ticket_stats(self) -> dict[str, int]:
        tickets = self.store.get_tickets()
        statuses = Counter(t.status for t in tickets)
        severities = Counter(t.severity for t in tickets)
        return {
            "total": len(tickets),
            "open": statuses["open"],
            "inProgress": statuses["in-progress"],
            "closed": statuses["closed"],
            "critical": severities["critical"],
            "high": severities["high"],
        }

    async def delete_ticket(self, ticket_id: str) -> bool:
        return await self.store.delete_ticket(ticket_id)

    async def clear_all(self):
        await self.store.clear()


def _unique_services(logs: list[LogEntry]) -> list[str]:
    return list(dict.fromkeys(str(log.get("service", "unknown")) for log in logs))


def _messages(logs: list[LogEntry]) -> list[str]:
    return [str(log.get("message", "")).lower() for log in logs]


def _error_description(logs: list[LogEntry]) -> str:
    counts = Counter(str(log.get("message", "")) for log in logs)
    lines = ["Critical errors have been detected in the system:", ""]
    for message, count in counts.items():
        lines.append(f"- {message} ({count} occurrence{'s' if count > 1 else ''})")
    return "\n".join(lines)


def _error_suggestions(logs: list[LogEntry]) -> list[str]:
    messages = _messages(logs)
    suggestions = []
    if any("connection" in m for m in messages):
        suggestions.append("Check database/service connectivity and firewall rules.")
        suggestions.append("Verify credentials and authentication tokens are valid.")
    if any("timeout" in m for m in messages):
        suggestions.append("Increase timeout thresholds if legitimate operations are timing out.")
        suggestions.append("Check for resource constraints (CPU, memory, disk).")
    if any("token" in m or "auth" in m for m in messages):
        suggestions.append("Verify and refresh authentication tokens/credentials.")
        suggestions.append("Check token expiration policies and renewal mechanisms.")
    return suggestions or [
        "Investigate root cause in application logs.",
        "Contact the affected service team for more information.",
    ]


def _warning_description(logs: list[LogEntry]) -> str:
    counts = Counter(str(log.get("message", "")) for log in logs)
    lines = ["Multiple warnings detected:", ""]
    for message, count in counts.most_common(5):
        lines.append(f"- {message} ({count}x)")
    return "\n".join(lines)


def _warning_suggestions(logs: list[LogEntry]) -> list[str]:
    messages = _messages(logs)
    suggestions = []
    if any("deprecated" in m for m in messages):
        suggestions.append("Update code to use non-deprecated APIs.")
        suggestions.append("Plan migration away from deprecated endpoints.")
    if any("pool" in m for m in messages):
        suggestions.append("Monitor connection pool utilization.")
        suggestions.append("Consider increasing pool size or optimizing queries.")
    if any("slow" in m for m in messages):
        suggestions.append("Identify and optimize slow queries.")
        suggestions.append("Add database indexes if needed.")
    return suggestions or ["Monitor this warning trend."]


PERFORMANCE_SUGGESTIONS = [
    "Profile the affected services to identify bottlenecks.",
    "Review recent deployments or config changes.",
    "Check system resource utilization (CPU, memory, disk I/O).",
    "Analyze query performance and consider adding indexes.",
]


def generate_ticket_from_logs(logs: list[LogEntry], category: str) -> dict[str, Any] | None:
    """Draft ticket fields for a group of logs, or None when there is nothing to report."""
    if not logs or category not in TICKET_CATEGORIES:
        return None

    services = _unique_services(logs)
    draft = {
        "affected_services": services,
        "related_logs": [dict(log) for log in logs],
    }
    if category == "errors":
        draft.update(
            title=f"Critical Errors Detected in {', '.join(services)}",
            description=_error_description(logs),
            severity="critical",
            suggestions=_error_suggestions(logs),
        )
    elif category == "warnings":
        draft.update(
            title=f"Warnings in {', '.join(services)}",
            description=_warning_description(logs),
            severity="medium",
            suggestions=_warning_suggestions(logs),
        )
    else:
        draft.update(
            title="Performance Issues Detected",
            description=(
                f"Performance issues detected affecting {len(logs)} log entries. "
                f"Services affected: {', '.join(services)}"
            ),
            severity="high",
            suggestions=list(PERFORMANCE_SUGGESTIONS),
        )
    return draft
