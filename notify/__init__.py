from __future__ import annotations

from engine.settings import EngineSettings
from notify.base import LoggingNotifier, Notifier, notify_safely
from notify.channels import DiscordNotifier, EmailNotifier, QueuedNotifier, RoutingNotifier


def build_delivery_notifier(settings: EngineSettings) -> Notifier:
    """Notifier that talks to the real channels; runs inside the worker."""
    email = (
        EmailNotifier(settings.resend_api_key, settings.notify_from_email, app_url=settings.app_url)
        if settings.resend_api_key
        else None
    )
    chat = DiscordNotifier(settings.discord_webhook_url, app_url=settings.app_url) if settings.discord_webhook_url else None
    return RoutingNotifier(email=email, chat=chat, team_email=settings.team_email)


__all__ = [
    "DiscordNotifier",
    "EmailNotifier",
    "LoggingNotifier",
    "Notifier",
    "QueuedNotifier",
    "RoutingNotifier",
    "build_delivery_notifier",
    "notify_safely",
]
