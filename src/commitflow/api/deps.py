"""Shared API dependency providers."""

from __future__ import annotations

import logging

from fastapi import Depends

from commitflow.config import ServerSettings
from commitflow.core.git_manager import GitManager
from commitflow.core.message_generator import AnthropicMessageGenerator
from commitflow.core.session import SessionRegistry
from commitflow.core.workflow_engine import WorkflowEngine
from commitflow.db.store import RunJournal

logger = logging.getLogger(__name__)

_SESSION_REGISTRY: SessionRegistry | None = None


def build_registry(settings: ServerSettings) -> SessionRegistry:
    """Wire the engine and its collaborators from settings."""
    if not settings.api_key:
        logger.warning("ANTHROPIC_API_KEY is not set; message generation will fail")
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = WorkflowEngine(
        git=GitManager(),
        generator=AnthropicMessageGenerator(settings.api_key, model=settings.model),
        settings=settings.engine,
    )
    return SessionRegistry(
        engine,
        RunJournal(settings.db_path),
        idle_timeout=settings.session_idle_timeout,
    )


def get_session_registry() -> SessionRegistry:
    global _SESSION_REGISTRY
    if _SESSION_REGISTRY is None:
        _SESSION_REGISTRY = build_registry(ServerSettings.from_env())
    return _SESSION_REGISTRY


def get_journal(
    registry: SessionRegistry = Depends(get_session_registry),
) -> RunJournal | None:
    return registry.journal


def configure_registry(settings: ServerSettings) -> SessionRegistry:
    global _SESSION_REGISTRY
    _SESSION_REGISTRY = build_registry(settings)
    return _SESSION_REGISTRY


def current_registry() -> SessionRegistry | None:
    return _SESSION_REGISTRY
