# notify.py
"""
Notification transports for finished runs.

Notification is best effort: the scheduler logs a DeliveryError and moves
on, the run status never depends on it.
"""
from __future__ import annotations

import http.client
import json
import logging
import smtplib
import urllib.error
import urllib.request
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .errors import DeliveryError
from .model import RunStatus, RunSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ack:
    transport: str
    detail: str = ""


class Notifier(Protocol):
    def notify(self, summary: RunSummary) -> Ack:
        """Deliver the summary or raise DeliveryError."""
        ...


STATUS_ICONS = {
    RunStatus.SUCCEEDED: ":white_check_mark:",
    RunStatus.FAILED: ":x:",
    RunStatus.CANCELLED: ":no_entry_sign:",
}


def summary_text(summary: RunSummary) -> str:
    event = summary.event
    lines = [
        f"{summary.run_name}: {summary.status.value}",
        f"workflow={summary.workflow} run={summary.run_id} event={event.kind} ref={event.ref} actor={event.actor}",
    ]
    for job in summary.jobs:
        reason = f" ({job.reason})" if job.reason else ""
        lines.append(f"  {job.job_id}: {job.status.value}{reason}")
    return "\n".join(lines)


# ---------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------

def post_json(url: str, payload: Dict[str, Any], timeout: float = 10.0) -> int:
    """POST a JSON document. Returns the HTTP status, raises DeliveryError."""
    data = json.dumps(payload).encode("utf-8")
    try:
        req = urllib.request.Request(url, data=data, headers={"Content-Type": "application/json"}, method="POST")
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return response.status
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", "replace") if e.fp else ""
        raise DeliveryError("webhook", f"HTTP {e.code} {e.reason}. {body}".strip()) from e
    except urllib.error.URLError as e:
        raise DeliveryError("webhook", f"network error: {e.reason}") from e
    except (OSError, http.client.HTTPException) as e:
        # stalled or dropped connections surface while the response is read
        raise DeliveryError("webhook", f"network error: {type(e).__name__}: {e}") from e
    except ValueError as e:
        raise DeliveryError("webhook", f"invalid webhook url: {e}") from e


def send_mail(
    *,
    server: str,
    port: int,
    sender: str,
    recipients: Sequence[str],
    subject: str,
    body: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    use_tls: bool = True,
    timeout: float = 10.0,
) -> None:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = ", ".join(recipients)
    msg.set_content(body)

    try:
        if port == 465:
            client = smtplib.SMTP_SSL(server, port, timeout=timeout)
        else:
            client = smtplib.SMTP(server, port, timeout=timeout)
        with client:
            if use_tls and port != 465:
                client.starttls()
            if username:
                client.login(username, password or "")
            client.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise DeliveryError("smtp", str(e)) from e


class WebhookNotifier:
    """Chat webhook (Slack incoming webhook / block kit payload)."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def payload(self, summary: RunSummary) -> Dict[str, Any]:
        icon = STATUS_ICONS.get(summary.status, "")
        text = f"{icon} {summary_text(summary)}".strip()
        return {
            "text": text,
            "blocks": [
                {"type": "section", "text": {"type": "mrkdwn", "text": text}},
            ],
        }

    def notify(self, summary: RunSummary) -> Ack:
        status = post_json(self.url, self.payload(summary), timeout=self.timeout)
        return Ack(transport="webhook", detail=f"HTTP {status}")


class SmtpNotifier:
    def __init__(
        self,
        server: str,
        port: int,
        sender: str,
        recipients: Sequence[str],
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
    ):
        self.server = server
        self.port = port
        self.sender = sender
        self.recipients = list(recipients)
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def notify(self, summary: RunSummary) -> Ack:
        send_mail(
            server=self.server,
            port=self.port,
            sender=self.sender,
            recipients=self.recipients,
            subject=f"[actionci] {summary.workflow} {summary.status.value}",
            body=summary_text(summary),
            username=self.username,
            password=self.password,
            use_tls=self.use_tls,
        )
        return Ack(transport="smtp", detail=", ".join(self.recipients))


class MultiNotifier:
    """Fan out to several transports; one failure does not stop the others."""

    def __init__(self, *notifiers: Notifier):
        self.notifiers = list(notifiers)

    def notify(self, summary: RunSummary) -> Ack:
        acks: List[str] = []
        errors: List[str] = []
        for notifier in self.notifiers:
            try:
                acks.append(notifier.notify(summary).transport)
            except DeliveryError as e:
                logger.warning("notification via %s failed: %s", e.transport, e)
                errors.append(str(e))
        if errors and not acks:
            raise DeliveryError("multi", "; ".join(errors))
        return Ack(transport="multi", detail=",".join(acks))


def deliver(notifier: Optional[Notifier], summary: RunSummary) -> Optional[Ack]:
    """Best-effort delivery used by the scheduler."""
    if notifier is None:
        return None
    try:
        ack = notifier.notify(summary)
    except DeliveryError as e:
        logger.warning("run %s: notification failed: %s", summary.run_id, e)
        return None
    logger.info("run %s: notification delivered via %s", summary.run_id, ack.transport)
    return ack
