import re

from .schemas import DEFAULT_TITLE

AUTO_TITLE_CHARS = 30
MAX_TITLE_CHARS = 50
TRAILING_PUNCTUATION = ".,;:!?'\""


def derive_title(content: str) -> str:
    """Title taken from a conversation's first user message."""
    text = (content or "").strip()
    if not text:
        return DEFAULT_TITLE
    if len(text) > AUTO_TITLE_CHARS:
        return text[:AUTO_TITLE_CHARS] + "..."
    return text


def clean_user_title(title: str) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValueError("title must not be empty")
    return cleaned[:MAX_TITLE_CHARS]


def _image_url_pattern(image_base_url: str) -> "re.Pattern[str]":
    base = re.escape(image_base_url.rstrip("/"))
    # Skip URLs already sitting inside a markdown link target.
    return re.compile(rf"(?<!\(){base}/prompt/[^\s)\]]+")


def rewrite_image_urls(text: str, image_base_url: str) -> str:
    """Turn bare generated-image URLs into markdown image references."""
    if not text:
        return text

    def replace(match: "re.Match[str]") -> str:
        url = match.group(0)
        trimmed = url.rstrip(TRAILING_PUNCTUATION)
        tail = url[len(trimmed):]
        return f"![Generated Image]({trimmed}){tail}"

    return _image_url_pattern(image_base_url).sub(replace, text)

