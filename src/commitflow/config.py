"""Process-wide settings resolved once from the environment."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from commitflow.core.session import DEFAULT_IDLE_TIMEOUT
from commitflow.core.workflow_engine import EngineSettings

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9000
DEFAULT_ADDRESS = f"{DEFAULT_HOST}:{DEFAULT_PORT}"
DEFAULT_DB_PATH = Path(".commitflow/commitflow.db")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def split_address(address: str) -> tuple[str, int]:
    """Split ``host:port``; a bare host uses the default port."""
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, DEFAULT_PORT
    if not port.isdigit():
        msg = f"Invalid port in address: {address}"
        raise ValueError(msg)
    return host or DEFAULT_HOST, int(port)


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


@dataclass(slots=True, frozen=True)
class ServerSettings:
    """Host-side configuration."""

    address: str = DEFAULT_ADDRESS
    api_key: str | None = field(default=None, repr=False)
    model: str | None = None
    db_path: Path = DEFAULT_DB_PATH
    engine: EngineSettings = field(default_factory=EngineSettings)
    session_idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ServerSettings:
        env = os.environ if env is None else env
        defaults = EngineSettings()
        idle_timeout = _float(env, "COMMITFLOW_SESSION_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT)
        engine = EngineSettings(
            detect_timeout=_float(env, "COMMITFLOW_DETECT_TIMEOUT", defaults.detect_timeout),
            generate_timeout=_float(env, "COMMITFLOW_GENERATE_TIMEOUT", defaults.generate_timeout),
            commit_timeout=_float(env, "COMMITFLOW_COMMIT_TIMEOUT", defaults.commit_timeout),
            push_timeout=_float(env, "COMMITFLOW_PUSH_TIMEOUT", defaults.push_timeout),
            commit_retry_delay=_float(
                env, "COMMITFLOW_COMMIT_RETRY_DELAY", defaults.commit_retry_delay
            ),
            generation_attempts=max(
                1, _int(env, "COMMITFLOW_GENERATION_ATTEMPTS", defaults.generation_attempts)
            ),
            fallback_enabled=env.get("COMMITFLOW_FALLBACK", "").lower() in _TRUE_VALUES,
            remote=env.get("COMMITFLOW_REMOTE") or defaults.remote,
            branch=env.get("COMMITFLOW_BRANCH") or defaults.branch,
        )
        return cls(
            address=env.get("COMMITFLOW_SERVER_ADDRESS") or DEFAULT_ADDRESS,
            api_key=env.get("ANTHROPIC_API_KEY") or None,
            model=env.get("COMMITFLOW_MODEL") or None,
            db_path=Path(env.get("COMMITFLOW_DB_PATH") or DEFAULT_DB_PATH),
            engine=engine,
            session_idle_timeout=idle_timeout if idle_timeout > 0 else None,
        )


@dataclass(slots=True, frozen=True)
class ClientSettings:
    """Client-side configuration."""

    address: str = DEFAULT_ADDRESS
    connect_timeout: float = 10.0
    connect_attempts: int = 3
    connect_backoff: float = 0.5
    reconnect_attempts: int = 3
    poll_interval: float = 5.0
    event_timeout: float = 120.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ClientSettings:
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            address=env.get("COMMITFLOW_SERVER_ADDRESS") or DEFAULT_ADDRESS,
            connect_timeout=_float(env, "COMMITFLOW_CONNECT_TIMEOUT", defaults.connect_timeout),
            event_timeout=_float(env, "COMMITFLOW_EVENT_TIMEOUT", defaults.event_timeout),
        )
