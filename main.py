import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Callable

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Query, Request
from pydantic import Field, model_validator

from agent import ConversationalAgent, LogTriageAgent
from agent_memory import AgentMemory
from alerts import TeamAlerter
from chat_sessions import ChatSessionStore
from config import Config, load_config
from llm import CompletionError, CompletionService, create_completion_service, generate_conversational_prompt
from log_analysis import filter_logs, get_log_statistics, identify_error_patterns
from log_sets import LogSetNotFoundError, LogSetSource
from models import CamelModel, LogEntry, Severity, TicketFilter, TicketStatus, utc_now
from ticket_service import TicketService
from ticket_store import TicketStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
)
logger = logging.getLogger(__name__)

CompletionFactory = Callable[[str, str | None], CompletionService]


class TriageRequest(CamelModel):
    log_set_id: str
    provider: str | None = None
    model: str | None = None


class ChatStartRequest(CamelModel):
    log_set_id: str | None = None
    logs: list[LogEntry] | None = None
    provider: str | None = None
    model: str | None = None

    @model_validator(mode="after")
    def require_logs_source(self):
        if not self.log_set_id and not self.logs:
            raise ValueError("Either logs or logSetId required")
        return self


class ChatMessageRequest(CamelModel):
    message: str = Field(min_length=1)


class TicketCreateRequest(CamelModel):
    title: str
    description: str
    severity: Severity
    affected_services: list[str]
    suggestions: list[str] = Field(default_factory=list)


class TicketStatusRequest(CamelModel):
    status: TicketStatus


class CommentRequest(CamelModel):
    author: str = Field(min_length=1)
    text: str = Field(min_length=1)


def create_app(
    config: Config | None = None,
    completion_factory: CompletionFactory | None = None,
    alerter: TeamAlerter | None = None,
) -> FastAPI:
    """Build the API with its stores injected explicitly.

    ``completion_factory(provider, model)`` lets tests swap the vendor call.
    """
    config = config or load_config()
    ticket_store = TicketStore(config["tickets"]["path"])
    sessions = ChatSessionStore(
        ttl_seconds=config["sessions"]["ttl_seconds"],
        cleanup_interval=config["sessions"]["cleanup_interval_seconds"],
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ticket_store.initialize()
        sessions.start()
        logger.info("Log triage API ready")
        yield
        await sessions.stop()

    app = FastAPI(title="Log Triage Agent", lifespan=lifespan)
    app.state.config = config
    app.state.ticket_store = ticket_store
    app.state.tickets = TicketService(ticket_store)
    app.state.sessions = sessions
    app.state.log_sets = LogSetSource(config["log_sets"]["directory"])
    app.state.alerter = alerter or TeamAlerter(config["slack"]["alert_channel"] or None)
    app.state.completion_factory = completion_factory or (
        lambda provider, model: create_completion_service(provider, model, config)
    )
    app.state.triage_lock = asyncio.Lock()

    register_routes(app)
    return app


def _load_log_set(app: FastAPI, log_set_id: str):
    try:
        return app.state.log_sets.load(log_set_id)
    except LogSetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _completion_service(app: FastAPI, provider: str | None, model: str | None) -> CompletionService:
    try:
        return app.state.completion_factory(provider or app.state.config["llm"]["provider"], model)
    except CompletionError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _session_or_404(app: FastAPI, session_id: str):
    session = app.state.sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found or expired")
    return session


def _ticket_or_404(ticket):
    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return ticket.to_json_dict()


def _failed_turn(session, response: str, error: Exception) -> dict[str, Any]:
    return {
        "assistantResponse": response,
        "toolExecutions": [],
        "status": session.status,
        "error": str(error),
    }


async def run_chat_turn(app: FastAPI, session_id: str, message: str) -> dict[str, Any]:
    """Restore a session's memory, process one message and persist the new memory.

    The session lock is held for the whole turn, so two messages to the same
    session never interleave.
    """
    sessions: ChatSessionStore = app.state.sessions
    _session_or_404(app, session_id)
    async with sessions.lock(session_id):
        session = _session_or_404(app, session_id)
        context = session.logs_context
        memory = AgentMemory.restore(
            generate_conversational_prompt(),
            context.logs,
            context.recent_changes,
            session.memory_state,
            max_tokens=app.state.config["memory"]["max_tokens"],
        )

        agent = ConversationalAgent(
            memory,
            context.all_logs,
            context.recent_changes,
            app.state.ticket_store,
            _completion_service(app, session.provider, session.model),
            alerter=app.state.alerter,
        )
        try:
            turn = await agent.process_user_message(message)
        except CompletionError as e:
            logger.error("Chat turn failed for %s: %s", session_id, e)
            return _failed_turn(session, f"Sorry, I could not get a response from the language model: {e}", e)
        except Exception as e:
            logger.exception("Chat turn crashed for %s", session_id)
            return _failed_turn(session, f"Sorry, something went wrong while processing your message: {e}", e)

        sessions.update(session_id, memory_state=memory.serialize(), status="active")
        return {
            "assistantResponse": turn.assistant_response,
            "toolExecutions": [execution.to_dict() for execution in turn.tool_executions],
            "status": "active",
        }


def register_routes(app: FastAPI):

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "timestamp": utc_now()}

    @app.get("/api/logs")
    async def list_log_sets(request: Request):
        return {"availableSets": request.app.state.log_sets.available()}

    @app.get("/api/logs/{log_set_id}")
    async def get_logs(
        request: Request,
        log_set_id: str,
        service: list[str] | None = Query(None),
        level: list[str] | None = Query(None),
        keyword: str | None = None,
        page: int = Query(1, ge=1),
        page_size: int = Query(50, ge=1, le=500, alias="pageSize"),
    ):
        logs, changes = _load_log_set(request.app, log_set_id)
        filtered = filter_logs(logs, services=service, levels=level, keyword=keyword)
        start = (page - 1) * page_size
        return {
            "logSetId": log_set_id,
            "total": len(logs),
            "filtered": len(filtered),
            "page": page,
            "pageSize": page_size,
            "logs": filtered[start:start + page_size],
            "changes": changes,
            "statistics": get_log_statistics(logs).to_dict(),
            "errorPatterns": [p.to_dict() for p in identify_error_patterns(logs)],
        }

    @app.post("/api/triage/run")
    async def run_triage(request: Request, body: TriageRequest):
        state = request.app.state
        if state.triage_lock.locked():
            raise HTTPException(status_code=429, detail="Triage already running")

        async with state.triage_lock:
            all_logs, changes = _load_log_set(request.app, body.log_set_id)
            agent_config = state.config["agent"]
            agent = LogTriageAgent(
                body.log_set_id,
                all_logs[-agent_config["initial_log_count"]:] if all_logs else [],
                all_logs,
                changes,
                state.ticket_store,
                _completion_service(request.app, body.provider, body.model),
                alerter=state.alerter,
                max_iterations=agent_config["max_iterations"],
                iteration_delay=agent_config["iteration_delay_seconds"],
                rate_limit_backoff=agent_config["rate_limit_backoff_seconds"],
                memory_max_tokens=state.config["memory"]["max_tokens"],
            )
            result = await agent.run()

        return {
            "success": result.error is None,
            "result": {
                "summary": result.summary,
                "findings": result.findings,
                "suggestedActions": result.suggested_actions,
                "iterations": result.iterations,
                "completed": result.completed,
                "error": result.error,
            },
            "ticketsCreated": len(result.tickets_created),
            "tickets": result.tickets_created,
        }

    @app.post("/api/chat/start")
    async def start_chat(request: Request, body: ChatStartRequest):
        state = request.app.state
        if body.log_set_id:
            all_logs, changes = _load_log_set(request.app, body.log_set_id)
            source = f"log_set_{body.log_set_id}"
        else:
            all_logs, changes = body.logs, []
            source = "custom_logs"

        provider = body.provider or state.config["llm"]["provider"]
        # Fail fast on an unknown provider instead of on the first message.
        completion = _completion_service(request.app, provider, body.model)
        model = getattr(completion, "model", None) or body.model or ""

        initial_count = state.config["agent"]["initial_log_count"]
        session_id = state.sessions.create(
            logs=all_logs[-initial_count:] if all_logs else [],
            all_logs=all_logs,
            recent_changes=changes,
            source=source,
            provider=provider,
            model=model,
        )
        return {
            "sessionId": session_id,
            "initialMessage": (
                f"Hello! I'm your log triage assistant. I have {len(all_logs)} logs loaded "
                f"from {source}. How can I help you investigate?"
            ),
            "logsInfo": {"count": len(all_logs), "source": source},
        }

    @app.post("/api/chat/{session_id}/message")
    async def send_chat_message(request: Request, session_id: str, body: ChatMessageRequest):
        if not body.message.strip():
            raise HTTPException(status_code=400, detail="Message cannot be empty")
        return await run_chat_turn(request.app, session_id, body.message)

    @app.get("/api/chat/{session_id}")
    async def get_chat(request: Request, session_id: str):
        session = _session_or_404(request.app, session_id)
        return {
            "sessionId": session.id,
            "messages": [entry.to_json_dict() for entry in session.memory_state.entries],
            "logsInfo": {
                "count": len(session.logs_context.all_logs),
                "source": session.logs_context.source,
            },
            "status": session.status,
            "createdAt": session.created_at,
            "lastActivity": session.last_activity,
        }

    @app.delete("/api/chat/{session_id}")
    async def end_chat(request: Request, session_id: str):
        request.app.state.sessions.delete(session_id)
        return {"success": True, "message": "Session ended"}

    @app.get("/api/tickets")
    async def list_tickets(
        request: Request,
        status: TicketStatus | None = None,
        severity: Severity | None = None,
        service: str | None = None,
        keyword: str | None = None,
    ):
        tickets: TicketService = request.app.state.tickets
        ticket_filter = TicketFilter(status=status, severity=severity, service=service, keyword=keyword)
        return {
            "tickets": [t.to_json_dict() for t in tickets.get_all(ticket_filter)],
            "stats": tickets.get_ticket_stats(),
        }

    @app.get("/api/tickets/{ticket_id}")
    async def get_ticket(request: Request, ticket_id: str):
        return _ticket_or_404(request.app.state.tickets.get_by_id(ticket_id))

    @app.post("/api/tickets", status_code=201)
    async def create_ticket(request: Request, body: TicketCreateRequest):
        ticket = await request.app.state.tickets.create(
            body.title,
            body.description,
            body.severity,
            body.affected_services,
            body.suggestions,
        )
        return ticket.to_json_dict()

    @app.patch("/api/tickets/{ticket_id}")
    async def update_ticket(request: Request, ticket_id: str, body: TicketStatusRequest):
        return _ticket_or_404(await request.app.state.tickets.update_status(ticket_id, body.status))

    @app.post("/api/tickets/{ticket_id}/comments")
    async def add_comment(request: Request, ticket_id: str, body: CommentRequest):
        return _ticket_or_404(await request.app.state.tickets.add_comment(ticket_id, body.author, body.text))

    @app.post("/api/tickets/{ticket_id}/close")
    async def close_ticket(request: Request, ticket_id: str, comment: str | None = Body(None, embed=True)):
        ticket = _ticket_or_404(await request.app.state.tickets.close_ticket(ticket_id, comment))
        return {"success": True, "ticket": ticket}


async def run_investigation(log_set_id: str, config: Config | None = None) -> str:
    """Run one investigation from the command line and return its summary."""
    config = config or load_config()
    ticket_store = TicketStore(config["tickets"]["path"])
    ticket_store.initialize()
    all_logs, changes = LogSetSource(config["log_sets"]["directory"]).load(log_set_id)

    agent_config = config["agent"]
    agent = LogTriageAgent(
        log_set_id,
        all_logs[-agent_config["initial_log_count"]:] if all_logs else [],
        all_logs,
        changes,
        ticket_store,
        create_completion_service(config=config),
        alerter=TeamAlerter(config["slack"]["alert_channel"] or None),
        max_iterations=agent_config["max_iterations"],
        iteration_delay=agent_config["iteration_delay_seconds"],
        rate_limit_backoff=agent_config["rate_limit_backoff_seconds"],
        memory_max_tokens=config["memory"]["max_tokens"],
    )
    result = await agent.run()
    return result.summary


app = create_app()

if __name__ == "__main__":
    logging.getLogger().setLevel(app.state.config["logging"]["level"])
    log_set_id = os.getenv("LOG_SET_ID")
    if log_set_id:
        print(asyncio.run(run_investigation(log_set_id, app.state.config)))
    else:
        uvicorn.run(app, host="0.0.0.0", port=8000)
