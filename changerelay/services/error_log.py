from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from changerelay.store import SqlStore


class ErrorLogHandler(logging.Handler):
    """Persist ERROR and above records into ``tblCTError`` for the notifier to email later."""

    def __init__(self, store: SqlStore, agent_type: Optional[str] = None, level: int = logging.ERROR) -> None:
        super().__init__(level=level)
        self.store = store
        self.agent_type = agent_type or "unknown"

    def headers_for(self, record: logging.LogRecord) -> str:
        logged_at = datetime.fromtimestamp(record.created).isoformat(sep=" ", timespec="seconds")
        return f"{self.agent_type} | {record.name} | {logged_at}"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            self.store.log_error(message, self.headers_for(record))
        except Exception:  # noqa: B902
            self.handleError(record)
