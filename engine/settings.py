from __future__ import annotations

import os
from dataclasses import dataclass
from fractions import Fraction


def _get_env_int(name: str, *, default: int, minimum: int = 0, maximum: int | None = None) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _get_env_ratio(name: str, *, default: str) -> Fraction:
    raw = os.getenv(name, "").strip() or default
    try:
        value = Fraction(raw)
    except (ValueError, ZeroDivisionError) as exc:
        raise ValueError(f"{name} must be a decimal or fraction, got: {raw!r}") from exc
    if not 0 <= value <= 1:
        raise ValueError(f"{name} must be within [0, 1], got: {raw!r}")
    return value


def _get_env_choice(name: str, *, default: str, choices: tuple[str, ...]) -> str:
    value = os.getenv(name, "").strip().lower() or default
    if value not in choices:
        raise ValueError(f"{name} must be one of {choices}, got: {value!r}")
    return value


@dataclass(frozen=True)
class EngineSettings:
    """Settlement engine settings loaded from environment."""

    platform_fee_percent: int = 15
    acceptance_window_hours: int = 48
    # product policy: progress ratio used when a project has no purchased revisions
    reassignment_fallback_ratio: Fraction = Fraction(1, 2)
    currency: str = "usd"
    sweep_interval_s: int = 300
    sweep_concurrency: int = 4
    sweep_batch_size: int = 200
    ledger_commit_retries: int = 3
    stripe_secret_key: str = ""
    resend_api_key: str = ""
    notify_from_email: str = "Songforge <team@songforge.studio>"
    team_email: str = "team@songforge.studio"
    discord_webhook_url: str = ""
    app_url: str = "http://localhost:5173"
    # queue: deliver through the RQ worker, direct: send inline, log: log only
    notify_mode: str = "queue"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            platform_fee_percent=_get_env_int("PLATFORM_FEE_PERCENT", default=15, maximum=100),
            acceptance_window_hours=_get_env_int("ACCEPTANCE_WINDOW_HOURS", default=48, minimum=1),
            reassignment_fallback_ratio=_get_env_ratio("REASSIGNMENT_FALLBACK_RATIO", default="0.5"),
            currency=os.getenv("CURRENCY", "usd").strip().lower() or "usd",
            sweep_interval_s=_get_env_int("SWEEP_INTERVAL_S", default=300, minimum=5),
            sweep_concurrency=_get_env_int("SWEEP_CONCURRENCY", default=4, minimum=1, maximum=32),
            sweep_batch_size=_get_env_int("SWEEP_BATCH_SIZE", default=200, minimum=1),
            ledger_commit_retries=_get_env_int("LEDGER_COMMIT_RETRIES", default=3, minimum=1),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", "").strip(),
            resend_api_key=os.getenv("RESEND_API_KEY", "").strip(),
            notify_from_email=os.getenv("NOTIFY_FROM_EMAIL", "Songforge <team@songforge.studio>").strip(),
            team_email=os.getenv("TEAM_EMAIL", "team@songforge.studio").strip(),
            discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL", "").strip(),
            app_url=os.getenv("APP_URL", "http://localhost:5173").strip().rstrip("/"),
            notify_mode=_get_env_choice("NOTIFY_MODE", default="queue", choices=("queue", "direct", "log")),
        )
