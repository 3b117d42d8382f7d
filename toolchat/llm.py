import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx

from .config import AppSettings
from .errors import FatalUpstreamError, InvalidResponseError, TransientUpstreamError
from .prompts import TITLE_SUMMARIZER_SYSTEM, title_request_text
from .schemas import Message, ToolCall


logger = logging.getLogger("uvicorn.error")

TokenCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class Answer:
    content: str
    finish_reason: str = "stop"
    model: Optional[str] = None


@dataclass
class ToolCallsRequested:
    tool_calls: List[ToolCall] = field(default_factory=list)
    content: Optional[str] = None


CompletionResult = Union[Answer, ToolCallsRequested]


def _build_tool_call(index: int, call_id: Optional[str], name: Optional[str], arguments: Any) -> ToolCall:
    if not name:
        raise InvalidResponseError(f"tool call {index} has no function name")
    if isinstance(arguments, dict):
        parsed: Any = arguments
    elif not arguments:
        parsed = {}
    else:
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError as exc:
            raise InvalidResponseError(f"tool call {index} ({name}) has malformed arguments") from exc
    if not isinstance(parsed, dict):
        raise InvalidResponseError(f"tool call {index} ({name}) arguments are not an object")
    return ToolCall(id=call_id or f"call_{index}", tool_name=name, arguments=parsed)


def parse_completion(data: Any) -> CompletionResult:
    """Turn a non-streaming /chat/completions body into an Answer or a tool-call request."""
    choices = data.get("choices") if isinstance(data, dict) else None
    if not choices or not isinstance(choices, list):
        raise InvalidResponseError("response has no choices")
    choice = choices[0] or {}
    message = choice.get("message")
    if not isinstance(message, dict):
        raise InvalidResponseError("response has no message")
    raw_calls = message.get("tool_calls") or []
    if raw_calls:
        calls = []
        for index, raw in enumerate(raw_calls):
            if not isinstance(raw, dict):
                raise InvalidResponseError(f"tool call {index} is not an object")
            function = raw.get("function")
            if not isinstance(function, dict):
                function = {}
            calls.append(_build_tool_call(index, raw.get("id"), function.get("name"), function.get("arguments")))
        return ToolCallsRequested(tool_calls=calls, content=message.get("content") or None)
    content = message.get("content")
    if content is None:
        content = message.get("reasoning") or message.get("reasoning_content")
    if content is None:
        raise InvalidResponseError("response carries neither content nor tool calls")
    return Answer(
        content=content,
        finish_reason=choice.get("finish_reason") or "stop",
        model=data.get("model"),
    )


class CompletionClient:
    """OpenAI-compatible chat completion client with bounded retry."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = http_client or httpx.AsyncClient(
            timeout=120,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )
        self._sleep = sleep

    def _wire_messages(self, messages: Sequence[Union[Message, Dict[str, Any]]]) -> List[Dict[str, Any]]:
        wire: List[Dict[str, Any]] = []
        for msg in messages:
            if isinstance(msg, Message):
                wire.append(msg.to_wire())
            elif isinstance(msg, dict):
                wire.append(msg)
        if not wire:
            raise ValueError("messages must include at least one entry")
        return wire

    def _build_payload(
        self,
        messages: Sequence[Union[Message, Dict[str, Any]]],
        settings: AppSettings,
        tools: Optional[List[Dict[str, Any]]],
        temperature: Optional[float],
        max_tokens: Optional[int],
        model: Optional[str],
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or settings.model_name,
            "messages": self._wire_messages(messages),
            "temperature": settings.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or settings.max_tokens,
        }
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    def _headers(self, settings: AppSettings) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        return headers

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except (json.JSONDecodeError, UnicodeDecodeError):
            pass
        return response.text

    async def _send_once(
        self, url: str, payload: Dict[str, Any], settings: AppSettings, stream: bool
    ) -> httpx.Response:
        request = self.client.build_request(
            "POST",
            url,
            json=payload,
            headers=self._headers(settings),
            timeout=settings.request_timeout_s,
        )
        try:
            resp = await self.client.send(request, stream=stream)
        except httpx.RequestError as exc:
            raise TransientUpstreamError(f"request failed: {exc}") from exc
        if resp.status_code < 400:
            return resp
        if stream:
            await resp.aread()
            await resp.aclose()
        detail = self._extract_error_detail(resp)
        if resp.status_code >= 500:
            raise TransientUpstreamError(
                f"upstream returned {resp.status_code}", status_code=resp.status_code, detail=detail
            )
        raise FatalUpstreamError(
            f"upstream rejected request ({resp.status_code})", status_code=resp.status_code, detail=detail
        )

    async def _send(
        self, payload: Dict[str, Any], settings: AppSettings, stream: bool = False
    ) -> httpx.Response:
        url = f"{settings.endpoint.rstrip('/')}/chat/completions"
        attempts = max(1, settings.max_retries)
        last_error: Optional[TransientUpstreamError] = None
        for attempt in range(1, attempts + 1):
            try:
                return await self._send_once(url, payload, settings, stream)
            except TransientUpstreamError as exc:
                last_error = exc
                logger.warning("Completion attempt %s/%s failed: %s", attempt, attempts, exc)
                if attempt < attempts:
                    await self._sleep(settings.retry_backoff_s)
        raise FatalUpstreamError(
            f"completion failed after {attempts} attempts",
            status_code=last_error.status_code if last_error else None,
            detail=last_error.detail if last_error else "",
        )

    async def complete(
        self,
        messages: Sequence[Union[Message, Dict[str, Any]]],
        settings: AppSettings,
        tools: Optional[List[Dict[str, Any]]] = None,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> CompletionResult:
        payload = self._build_payload(messages, settings, tools, temperature, max_tokens, model, stream=False)
        resp = await self._send(payload, settings)
        try:
            data = resp.json()
        except json.JSONDecodeError as exc:
            raise InvalidResponseError("response body is not JSON") from exc
        return parse_completion(data)

    async def complete_streaming(
        self,
        messages: Sequence[Union[Message, Dict[str, Any]]],
        settings: AppSettings,
        on_token: Optional[TokenCallback] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> CompletionResult:
        payload = self._build_payload(messages, settings, tools, temperature, max_tokens, model, stream=True)
        attempts = max(1, settings.max_retries)
        for attempt in range(1, attempts + 1):
            resp = await self._send(payload, settings, stream=True)
            content_parts: List[str] = []
            # Argument payloads arrive in fragments; keyed by the call index they belong to.
            fragments: Dict[int, Dict[str, str]] = {}
            try:
                finish_reason = await self._read_stream(resp, content_parts, fragments, on_token)
            except httpx.TransportError as exc:
                # Tokens already handed to on_token cannot be taken back, so only a silent stream is retried.
                if content_parts or fragments:
                    raise TransientUpstreamError(f"stream interrupted: {exc}") from exc
                logger.warning("Completion stream attempt %s/%s failed: %s", attempt, attempts, exc)
                if attempt == attempts:
                    raise FatalUpstreamError(
                        f"completion failed after {attempts} attempts", detail=str(exc)
                    ) from exc
                await self._sleep(settings.retry_backoff_s)
                continue
            if fragments:
                calls = [
                    _build_tool_call(index, slot["id"], slot["name"], slot["arguments"])
                    for index, slot in sorted(fragments.items())
                ]
                return ToolCallsRequested(tool_calls=calls, content="".join(content_parts) or None)
            if not content_parts:
                raise InvalidResponseError("stream carried neither content nor tool calls")
            return Answer(content="".join(content_parts), finish_reason=finish_reason or "stop")
        raise FatalUpstreamError(f"completion failed after {attempts} attempts")

    async def _read_stream(
        self,
        resp: httpx.Response,
        content_parts: List[str],
        fragments: Dict[int, Dict[str, str]],
        on_token: Optional[TokenCallback],
    ) -> Optional[str]:
        finish_reason: Optional[str] = None
        try:
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = line[len("data:"):].strip()
                if chunk == "[DONE]":
                    break
                try:
                    data = json.loads(chunk)
                except json.JSONDecodeError:
                    continue
                if not isinstance(data, dict):
                    continue
                choices = data.get("choices") or []
                if not choices or not isinstance(choices[0], dict):
                    continue
                choice = choices[0]
                finish_reason = choice.get("finish_reason") or finish_reason
                delta = choice.get("delta") or {}
                for position, fragment in enumerate(delta.get("tool_calls") or []):
                    if not isinstance(fragment, dict):
                        raise InvalidResponseError(f"tool call fragment {position} is not an object")
                    index = fragment.get("index", position)
                    slot = fragments.setdefault(index, {"id": "", "name": "", "arguments": ""})
                    if fragment.get("id"):
                        slot["id"] = fragment["id"]
                    function = fragment.get("function") or {}
                    if function.get("name") and not slot["name"]:
                        slot["name"] = function["name"]
                    if function.get("arguments"):
                        slot["arguments"] += function["arguments"]
                text = delta.get("content")
                if text:
                    content_parts.append(text)
                    if on_token is not None:
                        outcome = on_token(text)
                        if inspect.isawaitable(outcome):
                            await outcome
        finally:
            await resp.aclose()
        return finish_reason

    async def summarize_title(self, messages: Sequence[Message], settings: AppSettings) -> str:
        prompt = [
            {"role": "system", "content": TITLE_SUMMARIZER_SYSTEM},
            {"role": "user", "content": title_request_text(messages)},
        ]
        result = await self.complete(
            prompt,
            settings,
            temperature=0.7,
            max_tokens=30,
            model=settings.title_model or settings.model_name,
        )
        if not isinstance(result, Answer):
            return ""
        return result.content.strip().strip('"').strip("'").strip()

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
