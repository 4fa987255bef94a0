"""JSON-file backed ticket storage.

All writes go through one chained write queue: each mutation updates the
in-memory state and then waits for its own write, which starts only after
every earlier write has finished. A failed read never wipes tickets that are
already held in memory, and loading never writes to the file.
"""

import asyncio
import copy
import datetime
import json
import logging
import os
import secrets
import time
from typing import Any

from pydantic import ValidationError

from models import Ticket, TicketFilter, utc_now

logger = logging.getLogger(__name__)

STORAGE_VERSION = "1.0"


def new_ticket_id() -> str:
    return f"TKT-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


def _later_than(previous: str) -> str:
    # updatedAt must move forward even when two writes land in the same millisecond.
    now = utc_now()
    if now > previous:
        return now
    bumped = datetime.datetime.fromisoformat(previous.replace("Z", "+00:00")) + datetime.timedelta(milliseconds=1)
    return bumped.astimezone(datetime.timezone.utc).isoformat(timespec="milliseconds")


class TicketStore:
    def __init__(self, file_path: str = "data/tickets.json"):
        self.file_path = file_path
        self._tickets: list[Ticket] = []
        self._last_updated = utc_now()
        self._write_tail: asyncio.Future | None = None

    def initialize(self):
        directory = os.path.dirname(self.file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._load()
        logger.info("Ticket store initialized with %d existing tickets", len(self._tickets))

    def _load(self):
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.info("No ticket file at %s, starting empty", self.file_path)
            return
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read ticket file %s: %s", self.file_path, e)
            return

        if not isinstance(data, dict) or not isinstance(data.get("tickets"), list):
            logger.warning("Ticket file %s has an unexpected layout, ignoring it", self.file_path)
            return

        try:
            tickets = [Ticket.model_validate(t) for t in data["tickets"]]
        except ValidationError as e:
            logger.warning("Ticket file %s holds invalid tickets: %s", self.file_path, e)
            return

        if not tickets and self._tickets:
            return
        self._tickets = tickets
        self._last_updated = data.get("lastUpdated") or self._last_updated

    def _snapshot(self) -> str:
        self._last_updated = utc_now()
        document = {
            "version": STORAGE_VERSION,
            "lastUpdated": self._last_updated,
            "tickets": [t.to_json_dict() for t in self._tickets],
        }
        return json.dumps(document, indent=2)

    def _write_file(self, content: str):
        directory = os.path.dirname(self.file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.file_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, self.file_path)

    async def _save(self):
        previous = self._write_tail

        async def write_after_previous():
            if previous is not None:
                # An earlier failure belongs to its own caller.
                await asyncio.gather(previous, return_exceptions=True)
            await asyncio.to_thread(self._write_file, self._snapshot())

        task = asyncio.ensure_future(write_after_previous())
        self._write_tail = task
        await task

    async def create_ticket(self, fields: dict[str, Any]) -> Ticket:
        now = utc_now()
        data = copy.deepcopy(fields)
        data.update(id=new_ticket_id(), created_at=now, updated_at=now)
        data.setdefault("status", "open")
        ticket = Ticket.model_validate(data)

        self._tickets.append(ticket)
        await self._save()
        logger.info("Created ticket %s [%s] %s", ticket.id, ticket.severity, ticket.title)
        return ticket.model_copy(deep=True)

    def get_ticket(self, ticket_id: str) -> Ticket | None:
        for ticket in self._tickets:
            if ticket.id == ticket_id:
                return ticket.model_copy(deep=True)
        return None

    def get_tickets(self, ticket_filter: TicketFilter | None = None) -> list[Ticket]:
        results = [t.model_copy(deep=True) for t in self._tickets]
        if ticket_filter is None:
            return results

        f = ticket_filter
        if f.status:
            results = [t for t in results if t.status == f.status]
        if f.severity:
            results = [t for t in results if t.severity == f.severity]
        if f.service:
            service = f.service.lower()
            results = [t for t in results if any(service in s.lower() for s in t.affected_services)]
        if f.created_after:
            results = [t for t in results if t.created_at >= f.created_after]
        if f.created_before:
            results = [t for t in results if t.created_at <= f.created_before]
        if f.keyword:
            keyword = f.keyword.lower()
            results = [
                t for t in results
                if keyword in t.title.lower() or keyword in t.description.lower()
            ]
        return results

    async def update_ticket(self, ticket_id: str, changes: dict[str, Any]) -> Ticket | None:
        for index, ticket in enumerate(self._tickets):
            if ticket.id != ticket_id:
                continue

            merged = ticket.model_dump()
            merged.update(copy.deepcopy(changes))
            merged.update(
                id=ticket.id,
                created_at=ticket.created_at,
                updated_at=_later_than(ticket.updated_at),
            )
            updated = Ticket.model_validate(merged)
            self._tickets[index] = updated
            await self._save()
            return updated.model_copy(deep=True)
        return None

    async def delete_ticket(self, ticket_id: str) -> bool:
        for index, ticket in enumerate(self._tickets):
            if ticket.id == ticket_id:
                del self._tickets[index]
                await self._save()
                return True
        return False

    async def clear(self):
        self._tickets = []
        await self._save()

    def __len__(self):
        return len(self._tickets)
