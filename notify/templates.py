from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

TEMPLATES_PATH = Path(__file__).with_name("templates.yaml")


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def format_minor_units(amount: int) -> str:
    sign = "-" if amount < 0 else ""
    amount = abs(int(amount))
    return f"{sign}{amount // 100}.{amount % 100:02d}"


@lru_cache(maxsize=4)
def load_templates(path: str | None = None) -> dict[str, dict[str, str]]:
    raw = yaml.safe_load(Path(path or TEMPLATES_PATH).read_text()) or {}
    if not isinstance(raw, dict):
        raise ValueError("notification templates must be a mapping")
    return raw


def render(kind: str, payload: dict[str, Any], *, path: str | None = None) -> tuple[str, str]:
    templates = load_templates(path)
    template = templates.get(kind)
    if template is None:
        raise KeyError(f"no template for notification kind: {kind}")
    values = _SafeDict(payload)
    for key, value in payload.items():
        if key.endswith("_amount") and isinstance(value, int) and not isinstance(value, bool):
            values[f"{key}_display"] = format_minor_units(value)
    if "price" in payload and isinstance(payload["price"], int):
        values["price_amount_display"] = format_minor_units(payload["price"])
    values.setdefault("currency", "usd")
    subject = str(template.get("subject", kind)).format_map(values)
    body = str(template.get("body", "")).format_map(values).strip()
    return subject, body
