from __future__ import annotations

from datetime import datetime

import pytest

from changerelay.schemas import TError
from changerelay.services.notifier import ERROR_SUBJECT, Notifier, render_errors


@pytest.fixture()
def notifier_settings(make_settings):
    return make_settings(
        email_server="smtp.example.com",
        email_error_recipient="ops@example.com",
    )


def test_render_errors_escapes_and_keeps_line_breaks() -> None:
    errors = [TError(1, "line one\n<b>line two</b>", "master | changerelay", datetime(2024, 1, 1))]

    assert render_errors(errors) == (
        "<div><p><b>master | changerelay</b></p>line one<br />&lt;b&gt;line two&lt;/b&gt;</div><br/>"
    )


def test_notifier_sends_digest_and_marks_errors_sent(notifier_settings, relay) -> None:
    relay.log_error("first failure", "slave | changerelay.services.slave | 2024-01-01 00:00:00")
    relay.log_error("second failure", "slave | changerelay.services.slave | 2024-01-01 00:05:00")
    sent = []

    count = Notifier(notifier_settings, relay, sender=sent.append).run()

    assert count == 2
    (message,) = sent
    assert message["Subject"] == ERROR_SUBJECT
    assert message["To"] == "ops@example.com"
    assert message["From"] == "changerelay@smtp.example.com"
    body = message.get_content()
    assert "first failure" in body and "second failure" in body
    assert relay.get_unsent_errors() == []


def test_notifier_without_errors_sends_nothing(notifier_settings, relay) -> None:
    sent = []

    assert Notifier(notifier_settings, relay, sender=sent.append).run() == 0
    assert sent == []


def test_failed_send_leaves_errors_unsent(notifier_settings, relay) -> None:
    relay.log_error("boom", "master | changerelay | now")

    def _refuse(message):
        raise ConnectionRefusedError("smtp down")

    with pytest.raises(ConnectionRefusedError):
        Notifier(notifier_settings, relay, sender=_refuse).run()

    assert [error.message for error in relay.get_unsent_errors()] == ["boom"]
