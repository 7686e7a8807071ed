"""Email unsent entries of the durable error log to the configured recipient."""

from __future__ import annotations

import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Callable, Optional, Sequence

from changerelay.config import Settings
from changerelay.schemas import TError
from changerelay.store import SqlStore

logger = logging.getLogger(__name__)

ERROR_SUBJECT = "Errors occurred during changetracking"


def render_errors(errors: Sequence[TError]) -> str:
    blocks = []
    for error in errors:
        headers = html.escape(error.headers or "").replace("\n", "<br />")
        message = html.escape(error.message or "").replace("\n", "<br />")
        blocks.append(f"<div><p><b>{headers}</b></p>{message}</div><br/>")
    return "".join(blocks)


class Notifier:
    """Send one HTML digest of unsent errors, then flag them as sent."""

    def __init__(
        self,
        settings: Settings,
        error_store: SqlStore,
        *,
        sender: Optional[Callable[[EmailMessage], None]] = None,
    ) -> None:
        self.settings = settings
        self.error_store = error_store
        self._sender = sender or self._send_smtp

    def run(self) -> int:
        errors = self.error_store.get_unsent_errors()
        if not errors:
            logger.debug("No unsent errors in %s", self.error_store.name)
            return 0

        message = self.build_message(errors)
        try:
            self._sender(message)
        except Exception:  # noqa: B902
            logger.exception("Failed to email %s error(s) to %s", len(errors), self.settings.email_error_recipient)
            raise

        self.error_store.mark_errors_sent([error.id for error in errors])
        logger.info("Emailed %s error(s) to %s", len(errors), self.settings.email_error_recipient)
        return len(errors)

    def build_message(self, errors: Sequence[TError]) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = ERROR_SUBJECT
        message["From"] = self.settings.email_from_address or f"changerelay@{self.settings.email_server}"
        message["To"] = self.settings.email_error_recipient
        message.set_content(render_errors(errors), subtype="html")
        return message

    def _send_smtp(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.settings.email_server, self.settings.email_port, timeout=30) as client:
            client.send_message(message)
