import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Type, TypeVar
from urllib.parse import quote

from pydantic import BaseModel, ValidationError

from .config import AppSettings
from .errors import ToolExecutionError
from .prompts import reasoning_system_prompt
from .reasoning import ReasoningClient
from .schemas import ImageArgs, ReasoningArgs, WebSearchArgs
from .tavily import TavilyClient
from .tools import GENERATE_IMAGE, PERFORM_REASONING, WEB_SEARCH


logger = logging.getLogger("uvicorn.error")

ArgsT = TypeVar("ArgsT", bound=BaseModel)


class ToolExecutor(Protocol):
    name: str

    async def execute(self, arguments: Dict[str, Any]) -> str:
        ...


def _validate(model: Type[ArgsT], tool_name: str, arguments: Dict[str, Any]) -> ArgsT:
    try:
        return model.model_validate(arguments or {})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}" for err in exc.errors()
        )
        raise ToolExecutionError(tool_name, f"invalid arguments ({problems})") from exc


def _provider_error_reason(result: Dict[str, Any]) -> str:
    kind = result.get("error")
    if kind == "missing_api_key":
        return "search API key is not configured"
    if kind == "http_status":
        return f"provider returned HTTP {result.get('status_code')}: {result.get('detail')}"
    if kind == "empty_response":
        return "provider returned an empty response"
    detail = result.get("detail")
    return f"{kind}: {detail}" if detail else str(kind)


class WebSearchExecutor:
    name = WEB_SEARCH

    def __init__(self, tavily: TavilyClient):
        self.tavily = tavily

    async def execute(self, arguments: Dict[str, Any]) -> str:
        args = _validate(WebSearchArgs, self.name, arguments)
        result = await self.tavily.search(**args.model_dump(exclude_none=True))
        if isinstance(result, dict) and result.get("error"):
            raise ToolExecutionError(self.name, _provider_error_reason(result))
        return json.dumps(result, ensure_ascii=False)


class ImageGenerationExecutor:
    """Derives the image URL from the prompt; the image service renders on fetch."""

    name = GENERATE_IMAGE

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def image_url(self, prompt: str) -> str:
        return f"{self.base_url}/prompt/{quote(prompt, safe='')}"

    async def execute(self, arguments: Dict[str, Any]) -> str:
        args = _validate(ImageArgs, self.name, arguments)
        return self.image_url(args.prompt)


class ReasoningExecutor:
    name = PERFORM_REASONING

    def __init__(self, client: ReasoningClient):
        self.client = client

    async def execute(self, arguments: Dict[str, Any]) -> str:
        args = _validate(ReasoningArgs, self.name, arguments)
        messages = [
            {"role": "system", "content": reasoning_system_prompt(args.depth)},
            {"role": "user", "content": args.query},
        ]
        result = await self.client.reason(messages)
        if result.get("error"):
            raise ToolExecutionError(self.name, _provider_error_reason(result))
        return json.dumps({"reasoning": result["text"], "query": args.query}, ensure_ascii=False)


class ToolExecutors:
    """Executors keyed by tool name."""

    def __init__(self, executors: Iterable[ToolExecutor]):
        self._by_name: Dict[str, ToolExecutor] = {}
        for executor in executors:
            self._by_name[executor.name] = executor

    def get(self, name: str) -> Optional[ToolExecutor]:
        return self._by_name.get(name)

    def names(self) -> List[str]:
        return list(self._by_name)

    @classmethod
    def default(cls, tavily: TavilyClient, reasoning: ReasoningClient, settings: AppSettings) -> "ToolExecutors":
        return cls(
            [
                WebSearchExecutor(tavily),
                ImageGenerationExecutor(settings.image_base_url),
                ReasoningExecutor(reasoning),
            ]
        )
