from __future__ import annotations

from fractions import Fraction

import pytest

from engine.settings import EngineSettings
from engine.wiring import build_controller, build_notifier
from notify import LoggingNotifier, QueuedNotifier, RoutingNotifier


def test_defaults_without_environment(monkeypatch) -> None:
    for name in ("PLATFORM_FEE_PERCENT", "ACCEPTANCE_WINDOW_HOURS", "REASSIGNMENT_FALLBACK_RATIO", "NOTIFY_MODE"):
        monkeypatch.delenv(name, raising=False)

    settings = EngineSettings.from_env()

    assert settings.platform_fee_percent == 15
    assert settings.acceptance_window_hours == 48
    assert settings.reassignment_fallback_ratio == Fraction(1, 2)
    assert settings.notify_mode == "queue"


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("PLATFORM_FEE_PERCENT", "20")
    monkeypatch.setenv("REASSIGNMENT_FALLBACK_RATIO", "1/3")
    monkeypatch.setenv("APP_URL", "https://songforge.example/")
    monkeypatch.setenv("NOTIFY_MODE", "LOG")

    settings = EngineSettings.from_env()

    assert settings.platform_fee_percent == 20
    assert settings.reassignment_fallback_ratio == Fraction(1, 3)
    assert settings.app_url == "https://songforge.example"
    assert settings.notify_mode == "log"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PLATFORM_FEE_PERCENT", "abc"),
        ("PLATFORM_FEE_PERCENT", "101"),
        ("ACCEPTANCE_WINDOW_HOURS", "0"),
        ("REASSIGNMENT_FALLBACK_RATIO", "1.5"),
        ("REASSIGNMENT_FALLBACK_RATIO", "half"),
        ("NOTIFY_MODE", "carrier-pigeon"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, name, value) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        EngineSettings.from_env()


def test_notifier_follows_notify_mode() -> None:
    assert isinstance(build_notifier(EngineSettings(notify_mode="log")), LoggingNotifier)
    assert isinstance(build_notifier(EngineSettings(notify_mode="direct")), RoutingNotifier)
    assert isinstance(build_notifier(EngineSettings(notify_mode="queue")), QueuedNotifier)


def test_build_controller_uses_given_parts(ledger, gateway, notifier) -> None:
    controller = build_controller(
        EngineSettings(acceptance_window_hours=24),
        session_factory=ledger.session,
        gateway=gateway,
        notifier=notifier,
    )

    assert controller.gateway is gateway
    assert controller.notifier is notifier
    assert controller.revisions.notifier is notifier
    assert controller.settings.acceptance_window_hours == 24
