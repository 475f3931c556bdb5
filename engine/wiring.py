from __future__ import annotations

from collections.abc import Callable

from sqlalchemy.orm import Session

from engine.controller import ProjectLifecycleController
from engine.revisions import RevisionService
from engine.settings import EngineSettings
from ledger.store import LedgerStore
from notify import LoggingNotifier, Notifier, QueuedNotifier, build_delivery_notifier
from payments.gateway import PaymentGateway


def build_notifier(settings: EngineSettings) -> Notifier:
    if settings.notify_mode == "log":
        return LoggingNotifier()
    if settings.notify_mode == "direct":
        return build_delivery_notifier(settings)
    return QueuedNotifier()


def build_gateway(settings: EngineSettings) -> PaymentGateway:
    from payments.stripe_gateway import StripeGateway

    return StripeGateway(settings.stripe_secret_key, currency=settings.currency)


def build_controller(
    settings: EngineSettings | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
    gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
) -> ProjectLifecycleController:
    settings = settings or EngineSettings.from_env()
    ledger = LedgerStore(session_factory)
    notifier = notifier or build_notifier(settings)
    return ProjectLifecycleController(
        ledger,
        gateway or build_gateway(settings),
        notifier,
        settings=settings,
        revisions=RevisionService(ledger, notifier),
    )
