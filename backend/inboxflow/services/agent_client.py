from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import requests

logger = logging.getLogger(__name__)

# Reply fields tried in order; the first usable one wins
REPLY_KEYS: tuple[str, ...] = (
    "mensaje_agente",
    "respuesta_agente",
    "ai_message",
    "assistant_message",
    "assistant_reply",
    "reply",
    "text",
    "message",
    "output",
)
NESTED_REPLY_KEYS: tuple[str, ...] = ("mensaje_agente", "respuesta_agente", "text", "message", "output")

# Workflow acknowledgements that must never reach a customer
PLACEHOLDER_REPLIES = frozenset(
    {"workflow was started", "ok", "started", "success", "accepted", "received"}
)
MIN_REPLY_LENGTH = 3

_WHITESPACE = re.compile(r"\s+")


class AgentWebhookError(Exception):
    """The agent webhook answered with a non-2xx status or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _normalize(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def _usable(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = _normalize(value)
    if len(text) < MIN_REPLY_LENGTH:
        return None
    if text.lower() in PLACEHOLDER_REPLIES:
        return None
    return text


def _first_string(candidates: list[Any]) -> str | None:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return None


def extract_reply_text(response: Any) -> str | None:
    """Pull the customer-facing reply out of an agent response.

    Accepts a JSON object, a list whose first element is an object or string
    (n8n style), or a bare string. Returns None when no usable reply exists.
    """
    if isinstance(response, list):
        if not response:
            return None
        return extract_reply_text(response[0])

    if isinstance(response, str):
        return _usable(response)

    if not isinstance(response, dict):
        return None

    candidates: list[Any] = [response.get(key) for key in REPLY_KEYS]
    data = response.get("data")
    if isinstance(data, dict):
        candidates.extend(data.get(key) for key in NESTED_REPLY_KEYS)

    raw = _first_string(candidates)
    if raw is None:
        messages = response.get("messages")
        if isinstance(messages, list):
            parts = [m for m in messages if isinstance(m, str) and m.strip()]
            raw = "\n".join(parts) if parts else None

    if raw is None:
        return None
    return _usable(raw)


class AgentWebhookClient:
    """POSTs consolidated group payloads to an account's agent webhook."""

    def __init__(self, *, timeout_seconds: float = 30.0, http: Any = requests) -> None:
        self.timeout_seconds = timeout_seconds
        self._http = http

    def post(self, url: str, payload: dict[str, Any]) -> Any:
        try:
            resp = self._http.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise AgentWebhookError(f"Agent webhook unreachable: {exc}") from exc

        if resp.status_code < 200 or resp.status_code >= 300:
            body = (resp.text or "")[:500]
            raise AgentWebhookError(
                f"Agent webhook failed: {resp.status_code} - {body}", status_code=resp.status_code
            )

        try:
            return resp.json()
        except ValueError:
            return resp.text

    async def apost(self, url: str, payload: dict[str, Any]) -> Any:
        return await asyncio.to_thread(self.post, url, payload)
