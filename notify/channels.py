from __future__ import annotations

import json
import logging
from typing import Any
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError

from engine.errors import NotifierFailure
from notify.base import LoggingNotifier, Notifier
from notify.templates import render

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


def _post_json(url: str, payload: dict[str, Any], *, headers: dict[str, str], timeout_s: int) -> bytes:
    body = json.dumps(payload).encode("utf-8")
    req = urlrequest.Request(
        url=url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json", **headers},
    )
    try:
        with urlrequest.urlopen(req, timeout=timeout_s) as resp:
            return resp.read()
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")[:300]
        raise NotifierFailure(f"HTTP {exc.code} from {url}: {detail}") from exc
    except URLError as exc:
        raise NotifierFailure(f"network error calling {url}: {exc.reason}") from exc


class EmailNotifier:
    """Transactional email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        *,
        app_url: str = "",
        timeout_s: int = 10,
        url: str = RESEND_URL,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.app_url = app_url
        self.timeout_s = timeout_s
        self.url = url

    def send(self, kind: str, recipient: str, payload: dict[str, Any]) -> None:
        subject, text = render(kind, {"app_url": self.app_url, **payload})
        _post_json(
            self.url,
            {"from": self.from_email, "to": [recipient], "subject": subject, "text": text},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout_s=self.timeout_s,
        )


class DiscordNotifier:
    """Posts notifications to a Discord channel webhook."""

    def __init__(self, webhook_url: str, *, app_url: str = "", timeout_s: int = 10) -> None:
        self.webhook_url = webhook_url
        self.app_url = app_url
        self.timeout_s = timeout_s

    def send(self, kind: str, recipient: str, payload: dict[str, Any]) -> None:
        subject, text = render(kind, {"app_url": self.app_url, **payload})
        content = f"**{subject}**\n{text}"
        # discord rejects messages over 2000 characters
        _post_json(self.webhook_url, {"content": content[:2000]}, headers={}, timeout_s=self.timeout_s)


class RoutingNotifier:
    """Sends ``#channel`` recipients to chat and email addresses to email.

    Recipients without a deliverable address (``user:<id>``) go to the
    fallback, which logs by default.
    """

    def __init__(
        self,
        *,
        email: Notifier | None = None,
        chat: Notifier | None = None,
        fallback: Notifier | None = None,
        team_email: str | None = None,
    ) -> None:
        self.email = email
        self.chat = chat
        self.fallback = fallback or LoggingNotifier()
        self.team_email = team_email

    def send(self, kind: str, recipient: str, payload: dict[str, Any]) -> None:
        if recipient.startswith("#"):
            if self.chat is not None:
                self.chat.send(kind, recipient, payload)
            else:
                self.fallback.send(kind, recipient, payload)
            if recipient == "#team" and self.email is not None and self.team_email:
                self.email.send(kind, self.team_email, payload)
            return
        if "@" in recipient and self.email is not None:
            self.email.send(kind, recipient, payload)
            return
        self.fallback.send(kind, recipient, payload)


class QueuedNotifier:
    """Hands delivery to the RQ worker so request handlers never wait on HTTP."""

    def __init__(self, enqueue=None) -> None:  # type: ignore[no-untyped-def]
        if enqueue is None:
            from pipeline.queue import enqueue_notification

            enqueue = enqueue_notification
        self._enqueue = enqueue

    def send(self, kind: str, recipient: str, payload: dict[str, Any]) -> None:
        try:
            self._enqueue(kind, recipient, payload)
        except Exception as exc:
            raise NotifierFailure(f"could not enqueue {kind}: {exc}") from exc
