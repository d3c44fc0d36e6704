"""Commit message generation collaborators."""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from commitflow.models.workflow import ChangeKind, ChangeSet

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a senior software engineer writing precise git commit messages.

Your standards:
- The first line is an imperative subject that names the primary change
- The diff shows WHAT; the body explains WHY, in a few short bullets
- Specific verbs over vague ones (never "update", "change", "modify")
- Output only the commit message, no preamble and no code fences"""

_FENCE_PATTERN = re.compile(r"^```[\w-]*\s*$")
_KIND_VERBS = {
    ChangeKind.ADDED: "Add",
    ChangeKind.MODIFIED: "Update",
    ChangeKind.DELETED: "Remove",
    ChangeKind.RENAMED: "Rename",
    ChangeKind.COPIED: "Copy",
    ChangeKind.TYPE_CHANGED: "Retype",
    ChangeKind.UNMERGED: "Resolve",
}


class GenerationError(RuntimeError):
    """The text-generation service failed or returned an unusable message."""


class MessageGenerator(Protocol):
    """Async collaborator that turns a change set into commit message text."""

    async def generate(self, change_set: ChangeSet, hint: str | None) -> str:
        """Return the generated message text."""


def build_prompt(change_set: ChangeSet, hint: str | None, *, max_diff_chars: int = 12000) -> str:
    lines = ["FILES CHANGED:"]
    for change in change_set.files:
        if change.old_path:
            lines.append(f"  {change.kind.value}: {change.old_path} -> {change.path}")
        else:
            lines.append(f"  {change.kind.value}: {change.path}")

    if hint:
        lines.extend(["", f"CONTEXT FROM THE AUTHOR: {hint}"])

    diff = change_set.diff
    if len(diff) > max_diff_chars:
        omitted = len(diff) - max_diff_chars
        diff = f"{diff[:max_diff_chars]}\n... [{omitted} more characters truncated]"
    if diff:
        lines.extend(["", "DIFF:", diff])

    lines.extend(["", "Write the commit message for these changes."])
    return "\n".join(lines)


def clean_message(text: str) -> str:
    """Strip code fences and surrounding whitespace from a model response."""
    lines = [line for line in text.strip().splitlines() if not _FENCE_PATTERN.match(line.strip())]
    return "\n".join(lines).strip()


def validate_message(
    text: str,
    *,
    max_length: int,
    max_subject_length: int,
    prefix: str | None = None,
) -> str:
    """Return the cleaned, prefixed message or raise ``GenerationError``.

    Length limits apply to the message as it will be committed, prefix included.
    Over-long messages are rejected rather than truncated.
    """
    cleaned = clean_message(text)
    if not cleaned:
        msg = "empty response from generation service"
        raise GenerationError(msg)
    if prefix and prefix.strip():
        cleaned = f"{prefix.strip()} {cleaned}"
    if len(cleaned) > max_length:
        msg = f"generated message exceeds {max_length} characters ({len(cleaned)})"
        raise GenerationError(msg)
    subject = cleaned.splitlines()[0]
    if len(subject) > max_subject_length:
        msg = f"generated subject line exceeds {max_subject_length} characters ({len(subject)})"
        raise GenerationError(msg)
    return cleaned


def render_fallback_message(change_set: ChangeSet) -> str:
    """Deterministic templated message summarizing file counts and kinds."""
    counts = change_set.counts()
    total = len(change_set.files)
    noun = "file" if total == 1 else "files"
    if len(counts) == 1:
        verb = _KIND_VERBS[next(iter(counts))]
        subject = f"{verb} {total} {noun}"
    else:
        subject = f"Update {total} {noun} ({change_set.summary()})"

    body = []
    for change in change_set.files:
        if change.old_path:
            body.append(f"- {change.kind.value}: {change.old_path} -> {change.path}")
        else:
            body.append(f"- {change.kind.value}: {change.path}")
    return "\n".join([subject, "", *body])


class AnthropicMessageGenerator:
    """Claude-backed generator. The API key is resolved once at startup."""

    DEFAULT_MODEL = "claude-sonnet-4-20250514"
    MAX_TOKENS = 1000
    TEMPERATURE = 0.4

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str | None = None,
        client: Any | None = None,
        max_diff_chars: int = 12000,
    ) -> None:
        self.model = model or self.DEFAULT_MODEL
        self._api_key = api_key
        self._client = client
        self._max_diff_chars = max_diff_chars

    def _resolve_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key:
            msg = "no API key configured for the generation service (set ANTHROPIC_API_KEY)"
            raise GenerationError(msg)
        from anthropic import AsyncAnthropic

        self._client = AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def generate(self, change_set: ChangeSet, hint: str | None) -> str:
        from anthropic import APIError, APITimeoutError, AuthenticationError

        client = self._resolve_client()
        prompt = build_prompt(change_set, hint, max_diff_chars=self._max_diff_chars)
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.MAX_TOKENS,
                temperature=self.TEMPERATURE,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except AuthenticationError as exc:
            msg = "invalid API key for the generation service"
            raise GenerationError(msg) from exc
        except APITimeoutError as exc:
            msg = "timeout waiting for the generation service"
            raise GenerationError(msg) from exc
        except APIError as exc:
            msg = f"generation service error: {exc.message}"
            raise GenerationError(msg) from exc

        for block in response.content:
            if getattr(block, "type", None) == "text":
                logger.debug("generation used %s", getattr(response, "usage", None))
                return str(block.text)
        return ""
