from __future__ import annotations

from dataclasses import dataclass, fields, replace
import math
import os
from pathlib import Path
import tomllib
from typing import Any


TIME_UNITS = {
    "second": 1.0,
    "seconds": 1.0,
    "minute": 60.0,
    "minutes": 60.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "day": 86400.0,
    "days": 86400.0,
}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def resolve_time_unit(raw: str | float | int) -> float:
    """Seconds in one time unit: a unit name (``second``, ``minute``, ...) or a number of seconds."""
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        seconds = float(raw)
    else:
        normalized = str(raw).strip().lower()
        if normalized in TIME_UNITS:
            seconds = TIME_UNITS[normalized]
        else:
            try:
                seconds = float(normalized)
            except ValueError as exc:
                raise RuntimeError(
                    f"Invalid time_unit {raw!r}: expected one of {sorted(set(TIME_UNITS))} or seconds."
                ) from exc
    if not math.isfinite(seconds) or seconds <= 0:
        raise RuntimeError(f"Invalid time_unit {raw!r}: must be a finite positive number.")
    return seconds


@dataclass(slots=True)
class Settings:
    base_url: str = os.getenv("CRPT_API_BASE_URL", "https://ismp.crpt.ru/api/v3")
    create_document_path: str = os.getenv("CRPT_CREATE_DOCUMENT_PATH", "/lk/documents/create")
    request_limit: int = int(os.getenv("CRPT_REQUEST_LIMIT", "10"))
    time_unit: str = os.getenv("CRPT_TIME_UNIT", "second")
    poll_interval_seconds: float = float(os.getenv("CRPT_POLL_INTERVAL_SECONDS", "0.1"))
    timeout_seconds: float = float(os.getenv("CRPT_TIMEOUT_SECONDS", "30"))
    concurrency: int = int(os.getenv("CRPT_CONCURRENCY", "4"))
    http2: bool = _env_bool("CRPT_HTTP2", "false")

    @property
    def window_seconds(self) -> float:
        return resolve_time_unit(self.time_unit)

    @property
    def create_document_url(self) -> str:
        return self.base_url.rstrip("/") + "/" + self.create_document_path.lstrip("/")

    def as_dict(self) -> dict[str, Any]:
        return {field.name: getattr(self, field.name) for field in fields(self)}


_INT_KEYS = {"request_limit", "concurrency"}
_FLOAT_KEYS = {"poll_interval_seconds", "timeout_seconds"}
_STR_KEYS = {"base_url", "create_document_path"}


def load_settings(config_path: Path | None = None, base: Settings | None = None) -> Settings:
    """Overlay the ``[client]`` table of a TOML file on environment defaults."""
    settings = base or Settings()
    if config_path is None:
        return settings

    if not config_path.exists():
        raise RuntimeError(f"Config file not found: {config_path}")
    with config_path.open("rb") as handle:
        doc = tomllib.load(handle)

    section = doc.get("client", {})
    if not isinstance(section, dict):
        raise RuntimeError(f"Invalid [client] section in {config_path}: expected a table.")

    overrides: dict[str, Any] = {}
    for key, value in section.items():
        if key in _INT_KEYS:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise RuntimeError(f"Invalid client.{key} in config: must be a positive integer.")
            overrides[key] = value
        elif key in _FLOAT_KEYS:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise RuntimeError(f"Invalid client.{key} in config: must be a finite positive number.")
            overrides[key] = float(value)
        elif key in _STR_KEYS:
            if not isinstance(value, str) or not value.strip():
                raise RuntimeError(f"Invalid client.{key} in config: must be a non-empty string.")
            overrides[key] = value.strip()
        elif key == "time_unit":
            resolve_time_unit(value)
            overrides[key] = str(value)
        elif key == "http2":
            if not isinstance(value, bool):
                raise RuntimeError("Invalid client.http2 in config: must be true or false.")
            overrides[key] = value
        else:
            raise RuntimeError(f"Unknown key client.{key} in config.")

    return replace(settings, **overrides)
