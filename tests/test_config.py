from __future__ import annotations

from pathlib import Path

import pytest

from crpt_client.config import Settings, load_settings, resolve_time_unit


def _write_config(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "crpt.toml"
    path.write_text(body, encoding="utf-8")
    return path


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("second", 1.0), ("MINUTE", 60.0), ("hours", 3600.0), ("day", 86400.0), ("2.5", 2.5), (30, 30.0)],
)
def test_resolve_time_unit(raw, expected) -> None:
    assert resolve_time_unit(raw) == expected


@pytest.mark.parametrize("raw", ["fortnight", "0", "-1", 0, "nan", "inf", "-inf", float("nan"), float("inf")])
def test_resolve_time_unit_rejects_invalid_values(raw) -> None:
    with pytest.raises(RuntimeError, match="time_unit"):
        resolve_time_unit(raw)


def test_settings_build_the_create_url() -> None:
    settings = Settings(base_url="https://crpt.test/api/v3/", create_document_path="/lk/documents/create")

    assert settings.create_document_url == "https://crpt.test/api/v3/lk/documents/create"
    assert Settings(time_unit="minute").window_seconds == 60.0


def test_load_settings_overlays_client_table(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
[client]
base_url = "https://sandbox.crpt.test/api/v3"
request_limit = 50
time_unit = "minute"
timeout_seconds = 5
http2 = true
""",
    )

    settings = load_settings(config_path, base=Settings(concurrency=2))

    assert settings.base_url == "https://sandbox.crpt.test/api/v3"
    assert settings.request_limit == 50
    assert settings.window_seconds == 60.0
    assert settings.timeout_seconds == 5.0
    assert settings.http2 is True
    assert settings.concurrency == 2


def test_load_settings_without_path_returns_defaults() -> None:
    base = Settings(request_limit=7)
    assert load_settings(None, base=base) is base


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("[client]\nrequest_limit = 0\n", "client.request_limit"),
        ("[client]\npoll_interval_seconds = -1\n", "client.poll_interval_seconds"),
        ("[client]\npoll_interval_seconds = nan\n", "client.poll_interval_seconds"),
        ("[client]\ntimeout_seconds = inf\n", "client.timeout_seconds"),
        ("[client]\ntime_unit = \"nan\"\n", "time_unit"),
        ("[client]\ntime_unit = \"week-ish\"\n", "time_unit"),
        ("[client]\nhttp2 = \"yes\"\n", "client.http2"),
        ("[client]\nretries = 3\n", "Unknown key client.retries"),
        ("client = 3\n", "Invalid \\[client\\] section"),
    ],
)
def test_load_settings_rejects_invalid_values(tmp_path: Path, body: str, message: str) -> None:
    with pytest.raises(RuntimeError, match=message):
        load_settings(_write_config(tmp_path, body))


def test_load_settings_missing_file(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError, match="not found"):
        load_settings(tmp_path / "missing.toml")
