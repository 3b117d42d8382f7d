import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from toolchat.config import AppSettings
from toolchat.errors import ToolExecutionError
from toolchat.llm import Answer, CompletionResult
from toolchat.schemas import ToolCall


ScriptStep = Union[CompletionResult, Exception, Callable[[List[Dict[str, Any]]], CompletionResult]]


def _wire(messages: Sequence[Any]) -> List[Dict[str, Any]]:
    out = []
    for msg in messages:
        out.append(msg.to_wire() if hasattr(msg, "to_wire") else dict(msg))
    return out


def tool_call(name: str, call_id: str = "call_1", **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id, tool_name=name, arguments=arguments)


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        api_key="test-key",
        search_api_key=None,
        endpoint="http://llm.test/v1",
        model_name="test-model",
        retry_backoff_s=0.0,
        database_path=str(tmp_path / "test.db"),
        upload_dir=str(tmp_path / "uploads"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


class ScriptedCompletionClient:
    """Plays back a fixed sequence of completion results, recording each request."""

    def __init__(
        self,
        script: Optional[List[ScriptStep]] = None,
        title: Optional[str] = "Chat Title",
        title_error: Optional[Exception] = None,
        title_gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.script = list(script or [])
        self.title = title
        self.title_error = title_error
        self.title_gate = title_gate
        self.title_started = asyncio.Event()
        self.calls: List[Dict[str, Any]] = []
        self.title_calls: List[List[Any]] = []
        self.streamed: List[str] = []
        self.closed = False

    def _next(self, messages: List[Dict[str, Any]]) -> CompletionResult:
        if not self.script:
            return Answer(content="Default answer.")
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(messages)
        return step

    async def complete(self, messages, settings, tools=None, *, temperature=None, max_tokens=None, model=None):
        wire = _wire(messages)
        self.calls.append({"messages": wire, "tools": tools, "stream": False})
        await asyncio.sleep(0)
        return self._next(wire)

    async def complete_streaming(
        self, messages, settings, on_token=None, tools=None, *, temperature=None, max_tokens=None, model=None
    ):
        wire = _wire(messages)
        self.calls.append({"messages": wire, "tools": tools, "stream": True})
        result = self._next(wire)
        if isinstance(result, Answer) and on_token is not None:
            for piece in result.content.split(" "):
                text = piece + " "
                self.streamed.append(text)
                await on_token(text)
        return result

    async def summarize_title(self, messages, settings) -> str:
        self.title_calls.append(list(messages))
        self.title_started.set()
        if self.title_gate is not None:
            await self.title_gate.wait()
        if self.title_error is not None:
            raise self.title_error
        return self.title or ""

    async def close(self) -> None:
        self.closed = True


class FakeTavilyClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        search_response: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.api_key = api_key
        self.endpoint = "https://api.tavily.com/search"
        self.search_response = search_response
        self.search_calls: List[Dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, **kwargs: Any) -> Dict[str, Any]:
        self.search_calls.append({"query": query, **kwargs})
        if not self.enabled:
            return {"error": "missing_api_key"}
        if self.search_response is not None:
            return self.search_response
        return {"query": query, "answer": "Sunny.", "results": [{"title": "Weather", "url": "https://example.com"}]}

    async def close(self) -> None:
        return None


class FakeReasoningClient:
    def __init__(self, text: str = "Step 1. Think. Step 2. Conclude.") -> None:
        self.endpoint = "https://text.pollinations.ai/"
        self.model = "openai-reasoning"
        self.seed: Optional[int] = None
        self.text = text
        self.calls: List[List[Dict[str, Any]]] = []

    async def reason(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        self.calls.append(messages)
        if not self.text:
            return {"error": "empty_response"}
        return {"text": self.text}

    async def close(self) -> None:
        return None


class StaticExecutor:
    def __init__(self, name: str, output: Any = "ok") -> None:
        self.name = name
        self.output = output
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, arguments: Dict[str, Any]) -> str:
        self.calls.append(arguments)
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output)


class FailingExecutor:
    def __init__(self, name: str, error: Optional[Exception] = None) -> None:
        self.name = name
        self.error = error or ToolExecutionError(name, "provider unavailable")
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, arguments: Dict[str, Any]) -> str:
        self.calls.append(arguments)
        raise self.error


class BlockingExecutor:
    """Never finishes on its own; used to cancel a turn mid-call."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.started = asyncio.Event()
        self.cancelled = False

    async def execute(self, arguments: Dict[str, Any]) -> str:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return "unreachable"
