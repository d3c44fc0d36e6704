from __future__ import annotations

from pathlib import Path

import pytest

from commitflow.config import DEFAULT_ADDRESS, ClientSettings, ServerSettings, split_address


def test_server_defaults() -> None:
    settings = ServerSettings.from_env({})

    assert settings.address == DEFAULT_ADDRESS == "127.0.0.1:9000"
    assert settings.api_key is None
    assert settings.engine.fallback_enabled is False
    assert settings.engine.generation_attempts == 1
    assert settings.engine.commit_retry_delay == 1.0
    assert settings.session_idle_timeout == 900.0


def test_server_reads_environment() -> None:
    settings = ServerSettings.from_env(
        {
            "COMMITFLOW_SERVER_ADDRESS": "0.0.0.0:9100",
            "ANTHROPIC_API_KEY": "sk-test",
            "COMMITFLOW_MODEL": "claude-test",
            "COMMITFLOW_DB_PATH": "/tmp/journal.db",
            "COMMITFLOW_FALLBACK": "1",
            "COMMITFLOW_GENERATE_TIMEOUT": "15",
            "COMMITFLOW_GENERATION_ATTEMPTS": "3",
            "COMMITFLOW_REMOTE": "upstream",
            "COMMITFLOW_BRANCH": "main",
            "COMMITFLOW_SESSION_IDLE_TIMEOUT": "120",
        }
    )

    assert settings.address == "0.0.0.0:9100"
    assert settings.api_key == "sk-test"
    assert settings.model == "claude-test"
    assert settings.db_path == Path("/tmp/journal.db")
    assert settings.engine.fallback_enabled is True
    assert settings.engine.generate_timeout == 15.0
    assert settings.engine.generation_attempts == 3
    assert settings.engine.remote == "upstream"
    assert settings.engine.branch == "main"
    assert settings.session_idle_timeout == 120.0


def test_zero_idle_timeout_disables_reaping() -> None:
    assert ServerSettings.from_env({"COMMITFLOW_SESSION_IDLE_TIMEOUT": "0"}).session_idle_timeout is None


def test_api_key_is_not_in_repr() -> None:
    settings = ServerSettings.from_env({"ANTHROPIC_API_KEY": "sk-secret"})

    assert "sk-secret" not in repr(settings)


def test_invalid_numbers_fall_back_to_defaults() -> None:
    settings = ServerSettings.from_env(
        {"COMMITFLOW_PUSH_TIMEOUT": "soon", "COMMITFLOW_GENERATION_ATTEMPTS": "0"}
    )

    assert settings.engine.push_timeout == 60.0
    assert settings.engine.generation_attempts == 1


def test_client_reads_environment() -> None:
    settings = ClientSettings.from_env(
        {"COMMITFLOW_SERVER_ADDRESS": "10.0.0.5:9000", "COMMITFLOW_EVENT_TIMEOUT": "30"}
    )

    assert settings.address == "10.0.0.5:9000"
    assert settings.event_timeout == 30.0
    assert settings.connect_attempts == 3


@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("127.0.0.1:9000", ("127.0.0.1", 9000)),
        ("localhost", ("localhost", 9000)),
        (":8080", ("127.0.0.1", 8080)),
    ],
)
def test_split_address(address: str, expected: tuple[str, int]) -> None:
    assert split_address(address) == expected


def test_split_address_rejects_bad_port() -> None:
    with pytest.raises(ValueError):
        split_address("localhost:http")
