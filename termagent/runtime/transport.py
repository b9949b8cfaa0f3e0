"""Model transport: the Anthropic Messages API over httpx.

The runtime only depends on the ``ModelTransport`` protocol. AnthropicTransport
is the one shipped implementation; it converts Turns to API messages,
parses the response into a ModelResponse and classifies failures.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx

from termagent.config import Settings
from termagent.errors import AuthError, RateLimited, TransportError
from termagent.runtime.models import Conversation, ModelResponse, ToolCall, Turn

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_RETRY_STATUSES = (429, 500, 529)
_MAX_RETRY_AFTER = 30.0


class ModelTransport(Protocol):
    async def send(
        self,
        conversation: Conversation,
        tools: list[dict[str, Any]],
        system_prompt: str,
    ) -> ModelResponse: ...


def _turn_blocks(turn: Turn) -> tuple[str, list[dict[str, Any]]]:
    """Map one Turn to (api_role, content blocks)."""
    if turn.role == "tool":
        return "user", [
            {
                "type": "tool_result",
                "tool_use_id": turn.tool_call_id,
                "content": turn.content,
                "is_error": turn.is_error,
            }
        ]
    if turn.role == "assistant":
        blocks: list[dict[str, Any]] = []
        if turn.content:
            blocks.append({"type": "text", "text": turn.content})
        for call in turn.tool_calls:
            blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
        return "assistant", blocks
    # user and summary turns are both plain user text
    return "user", [{"type": "text", "text": turn.content}]


def format_messages(turns: list[Turn]) -> list[dict[str, Any]]:
    """Convert turns to API messages, merging consecutive same-role turns."""
    messages: list[dict[str, Any]] = []
    for turn in turns:
        role, blocks = _turn_blocks(turn)
        if not blocks:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})
    return messages


def parse_response(data: dict[str, Any]) -> ModelResponse:
    texts: list[str] = []
    calls: list[ToolCall] = []
    for block in data.get("content", []):
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            calls.append(ToolCall(id=block["id"], name=block["name"], arguments=block.get("input") or {}))
    return ModelResponse(
        text="\n".join(t for t in texts if t),
        tool_calls=calls,
        usage={k: v for k, v in (data.get("usage") or {}).items() if isinstance(v, int)},
        stop_reason=data.get("stop_reason") or "",
    )


def _retry_after(response: httpx.Response) -> float:
    try:
        seconds = float(response.headers.get("retry-after", "1"))
    except ValueError:
        seconds = 1.0
    return min(max(seconds, 0.0), _MAX_RETRY_AFTER)


class AnthropicTransport:
    """Calls the Messages API with one retry for 429/500/529 and timeouts."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = client or self._make_client(settings)

    @staticmethod
    def _make_client(settings: Settings) -> httpx.AsyncClient:
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        api_key = settings.anthropic_api_key or ""
        if api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        return httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )

    async def close(self) -> None:
        await self._http.aclose()

    def build_payload(
        self,
        conversation: Conversation,
        tools: list[dict[str, Any]],
        system_prompt: str,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": format_messages(conversation.turns),
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def send(
        self,
        conversation: Conversation,
        tools: list[dict[str, Any]],
        system_prompt: str,
    ) -> ModelResponse:
        payload = self.build_payload(conversation, tools, system_prompt)

        last_error: TransportError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)
            except httpx.TimeoutException as e:
                last_error = TransportError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
                break
            except httpx.HTTPError as e:
                last_error = TransportError(f"HTTP error: {e}")
                break  # Don't retry connection errors

            if response.status_code == 200:
                return parse_response(response.json())

            try:
                error = response.json().get("error", {})
                error_type = error.get("type", "unknown")
                error_msg = error.get("message", "unknown error")
            except ValueError:
                error_type = "http_error"
                error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

            if response.status_code in (401, 403):
                raise AuthError(f"Anthropic API rejected credentials ({response.status_code}): {error_msg}")

            retry_after = _retry_after(response)
            if response.status_code in _RETRY_STATUSES and attempt == 0:
                logger.warning(
                    "API error %d (%s), retrying in %.1fs: %s",
                    response.status_code,
                    error_type,
                    retry_after,
                    error_msg,
                )
                await asyncio.sleep(retry_after)
                continue

            message = f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
            if response.status_code == 429:
                raise RateLimited(message, retry_after=retry_after)
            last_error = TransportError(message)
            break

        raise last_error or TransportError("API call failed with unknown error")
