"""System prompts for the chat assistant, the reasoning model, and the title summarizer."""

from datetime import date
from typing import Sequence

from .schemas import Message

SEARCH_GUIDE = """
When performing web searches, you can customize the search parameters based on the user's query:
- search_depth: Use 'advanced' for complex queries requiring in-depth information, 'basic' for simple queries (default: basic)
- max_results: Number of results to return, 1-20 (default: 5)
- time_range: Filter by time - 'day', 'week', 'month', 'year' (use for time-sensitive queries)
- include_answer: Set to true to include an AI-generated summary of the search results (default: true)
- include_images: Set to true to include image search results (useful for visual topics)
- include_domains/exclude_domains: Arrays of specific domains to include or exclude

Guidelines for choosing parameters:
- For recent news or events: use time_range='day' or 'week' and max_results=10
- For research topics: use search_depth='advanced' and max_results=15
- For simple factual questions: use search_depth='basic' and max_results=3
- For visual topics (art, design, places): use include_images=true
- For technical documentation: consider using include_domains with specific technical sites

Always choose parameters that best serve the user's information needs.
"""

IMAGE_GUIDE = """
When you generate an image, include the returned image URL in your reply so the user can see it.
"""

REASONING_SYSTEM = "You are a reasoning assistant that thinks deeply about problems."

REASONING_ADVANCED_SUFFIX = (
    " Work through the problem step by step, consider alternative interpretations,"
    " check your intermediate results, and state your conclusion clearly at the end."
)

TITLE_SUMMARIZER_SYSTEM = (
    "You are a highly efficient chat summarizer. Create a concise, relevant title "
    "(5 words or fewer) that captures the conversation theme."
)

# The summarizer only ever sees the opening of a conversation.
TITLE_CONTEXT_MESSAGES = 10


def format_prompt_date(today: date) -> str:
    return today.strftime("%B %d, %Y")


def build_system_prompt(today: date) -> str:
    header = (
        "You are a helpful assistant with web search capabilities. "
        f"The current date is {format_prompt_date(today)}."
    )
    return f"{header}\n{SEARCH_GUIDE}{IMAGE_GUIDE}".strip()


def reasoning_system_prompt(depth: str) -> str:
    if depth == "advanced":
        return REASONING_SYSTEM + REASONING_ADVANCED_SUFFIX
    return REASONING_SYSTEM


def title_request_text(messages: Sequence[Message]) -> str:
    opening = [m for m in messages if m.role in ("user", "assistant") and not m.is_status]
    opening = opening[:TITLE_CONTEXT_MESSAGES]
    label = "initial message" if len(opening) == 1 else "conversation"
    lines = "\n".join(f"{m.role}: {m.content or ''}" for m in opening)
    return f"Please summarize this {label} in 5 or fewer words:\n{lines}"
