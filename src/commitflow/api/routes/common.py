"""Common route helpers."""

from __future__ import annotations

from fastapi import HTTPException, status

from commitflow.core.session import RunHandle, Session, SessionRegistry, UnknownRunError, UnknownSessionError


def require_session(session_id: str, registry: SessionRegistry) -> Session:
    """Load session or return 404."""
    try:
        return registry.get(session_id)
    except UnknownSessionError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found") from exc


def require_run(session: Session, run_id: str) -> RunHandle:
    """Load the session's run or return 404."""
    try:
        return session.get_run(run_id)
    except UnknownRunError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found") from exc
