import json
import logging
import os
import re

from models import ChangeEvent, LogEntry

logger = logging.getLogger(__name__)

LOG_SET_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class LogSetNotFoundError(LookupError):
    pass


class LogSetSource:
    """Named log sets stored as ``log_set_<id>.json`` files.

    Each file holds ``{"logs": [...], "recentChanges": [...]}``.
    """

    def __init__(self, directory: str = "log_sets"):
        self.directory = directory

    def path_for(self, log_set_id) -> str:
        log_set_id = str(log_set_id)
        if not LOG_SET_ID_PATTERN.match(log_set_id):
            raise LogSetNotFoundError(f"Invalid log set id: {log_set_id}")
        return os.path.join(self.directory, f"log_set_{log_set_id}.json")

    def load(self, log_set_id) -> tuple[list[LogEntry], list[ChangeEvent]]:
        path = self.path_for(log_set_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise LogSetNotFoundError(f"Log set {log_set_id} not found") from e

        logs = data.get("logs", [])
        changes = data.get("recentChanges", [])
        logger.info("Loaded log set %s: %d logs, %d changes", log_set_id, len(logs), len(changes))
        return logs, changes

    def available(self) -> list[str]:
        if not os.path.isdir(self.directory):
            return []
        ids = []
        for name in sorted(os.listdir(self.directory)):
            match = re.match(r"^log_set_(.+)\.json$", name)
            if match:
                ids.append(match.group(1))
        return ids
