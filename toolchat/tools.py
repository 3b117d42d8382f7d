"""Static catalog of the tools advertised to the model, plus their status-line templates."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .schemas import ToolCall


WEB_SEARCH = "performWebSearch"
GENERATE_IMAGE = "generateImage"
PERFORM_REASONING = "performReasoning"

TIME_RANGE_PHRASES = {
    "day": "past day",
    "d": "past day",
    "week": "past week",
    "w": "past week",
    "month": "past month",
    "m": "past month",
    "year": "past year",
    "y": "past year",
}


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


_WEB_SEARCH_SPEC = ToolSpec(
    name=WEB_SEARCH,
    description="Performs a web search using the Tavily API and returns the results.",
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query to perform on the web"},
            "search_depth": {
                "type": "string",
                "description": "The depth of the search. A basic search costs 1 API Credit, "
                "while an advanced search costs 2 API Credits.",
                "enum": ["basic", "advanced"],
            },
            "max_results": {
                "type": "integer",
                "description": "The maximum number of search results to return (1-20).",
                "minimum": 1,
                "maximum": 20,
            },
            "time_range": {
                "type": "string",
                "description": "The time range back from the current date to filter results.",
                "enum": ["day", "week", "month", "year", "d", "w", "m", "y"],
            },
            "days": {
                "type": "integer",
                "description": "Number of days back from the current date to include. Available only if topic is news.",
                "minimum": 0,
            },
            "include_answer": {
                "type": "boolean",
                "description": "Include an LLM-generated answer to the provided query.",
            },
            "include_raw_content": {
                "type": "boolean",
                "description": "Include the cleaned and parsed HTML content of each search result.",
            },
            "include_images": {
                "type": "boolean",
                "description": "Also perform an image search and include the results in the response.",
            },
            "include_image_descriptions": {
                "type": "boolean",
                "description": "When include_images is true, also add a descriptive text for each image.",
            },
            "include_domains": {
                "type": "array",
                "description": "A list of domains to specifically include in the search results.",
                "items": {"type": "string"},
            },
            "exclude_domains": {
                "type": "array",
                "description": "A list of domains to specifically exclude from the search results.",
                "items": {"type": "string"},
            },
        },
        "required": ["query"],
    },
)

_GENERATE_IMAGE_SPEC = ToolSpec(
    name=GENERATE_IMAGE,
    description="Generates an image using Pollinations.ai based on a text prompt.",
    parameters={
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "description": "A detailed description of the image to generate. "
                "Be specific and descriptive for best results.",
            },
        },
        "required": ["prompt"],
    },
)

_PERFORM_REASONING_SPEC = ToolSpec(
    name=PERFORM_REASONING,
    description="Performs extended reasoning using a dedicated reasoning model to help with complex problems.",
    parameters={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The problem or question that requires deeper reasoning before answering.",
            },
            "depth": {
                "type": "string",
                "description": "The depth of reasoning to perform.",
                "enum": ["basic", "advanced"],
                "default": "advanced",
            },
        },
        "required": ["query"],
    },
)

_REGISTRY = (_WEB_SEARCH_SPEC, _GENERATE_IMAGE_SPEC, _PERFORM_REASONING_SPEC)


def list_tools() -> tuple:
    return _REGISTRY


def get_tool(name: str) -> Optional[ToolSpec]:
    for spec in _REGISTRY:
        if spec.name == name:
            return spec
    return None


def to_openai_tools(specs: Iterable[ToolSpec]) -> List[Dict[str, Any]]:
    return [spec.to_openai() for spec in specs]


def _describe_search(args: Dict[str, Any]) -> str:
    text = f'Searching for: "{args.get("query", "")}"'
    notes: List[str] = []
    if args.get("search_depth") == "advanced":
        notes.append("advanced search")
    max_results = args.get("max_results")
    if max_results:
        notes.append(f"{max_results} {'result' if max_results == 1 else 'results'}")
    time_range = args.get("time_range")
    if time_range:
        notes.append(TIME_RANGE_PHRASES.get(str(time_range), str(time_range)))
    if args.get("include_images"):
        notes.append("with images")
    if args.get("include_answer"):
        notes.append("with AI summary")
    if notes:
        text += f" ({', '.join(notes)})"
    return text


def describe_tool_call(call: ToolCall) -> str:
    """User-visible status line shown while a tool call runs."""
    args = call.arguments or {}
    if call.tool_name == WEB_SEARCH:
        return _describe_search(args)
    if call.tool_name == PERFORM_REASONING:
        return f'Reasoning about: "{args.get("query", "")}"'
    if call.tool_name == GENERATE_IMAGE:
        return f'Generating image: "{args.get("prompt", "")}"'
    return "Processing..."
