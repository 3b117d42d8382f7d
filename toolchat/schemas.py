import json
import time
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["system", "user", "assistant", "tool"]
MessageKind = Literal["final", "status"]
TitleSource = Literal["default", "auto", "summary", "user"]
TimeRange = Literal["day", "week", "month", "year", "d", "w", "m", "y"]

DEFAULT_TITLE = "New Chat"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return uuid.uuid4().hex


class ToolCall(BaseModel):
    id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.tool_name, "arguments": json.dumps(self.arguments)},
        }


class Attachments(BaseModel):
    image_url: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    uploaded_image: Optional[str] = None
    reasoning_trace: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.image_url or self.image_urls or self.uploaded_image or self.reasoning_trace)


class Message(BaseModel):
    id: str = Field(default_factory=new_message_id)
    role: Role
    content: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)
    kind: MessageKind = "final"
    turn_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    attachments: Optional[Attachments] = None

    @property
    def is_status(self) -> bool:
        return self.kind == "status"

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call_id:
            wire["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            wire["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        return wire


class Conversation(BaseModel):
    id: int
    title: str = DEFAULT_TITLE
    title_source: TitleSource = "default"
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    messages: List[Message] = Field(default_factory=list)


# Tool arguments, validated by the executors.


class WebSearchArgs(BaseModel):
    query: str = Field(min_length=1)
    search_depth: Literal["basic", "advanced"] = "basic"
    max_results: int = Field(default=5, ge=1, le=20)
    time_range: Optional[TimeRange] = None
    days: Optional[int] = Field(default=None, ge=0)
    include_answer: bool = True
    include_raw_content: Optional[bool] = None
    include_images: Optional[bool] = None
    include_image_descriptions: Optional[bool] = None
    include_domains: Optional[List[str]] = None
    exclude_domains: Optional[List[str]] = None

    model_config = {"extra": "ignore"}


class ImageArgs(BaseModel):
    prompt: str = Field(min_length=1)

    model_config = {"extra": "ignore"}


class ReasoningArgs(BaseModel):
    query: str = Field(min_length=1)
    depth: Literal["basic", "advanced"] = "advanced"

    model_config = {"extra": "ignore"}


# HTTP payloads


class SendMessageRequest(BaseModel):
    content: str = ""
    upload_id: Optional[int] = None


class CreateConversationRequest(BaseModel):
    title: Optional[str] = None


class UpdateConversationRequest(BaseModel):
    title: str
