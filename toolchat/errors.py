from typing import Any, Dict, Optional


class UpstreamError(Exception):
    """Completion endpoint failure."""

    user_message = "The model endpoint returned an error."

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class TransientUpstreamError(UpstreamError):
    user_message = "The model endpoint is temporarily unavailable."


class FatalUpstreamError(UpstreamError):
    user_message = "The model endpoint could not complete the request."


class InvalidResponseError(Exception):
    user_message = "The model returned a response that could not be understood."


class ToolExecutionError(Exception):
    ACTIONS = {
        "performWebSearch": "perform web search",
        "generateImage": "generate image",
        "performReasoning": "perform reasoning",
    }

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"{tool_name}: {reason}")
        self.tool_name = tool_name
        self.reason = reason

    def to_payload(self) -> Dict[str, Any]:
        action = self.ACTIONS.get(self.tool_name, f"run {self.tool_name}")
        return {"error": f"Failed to {action}", "tool": self.tool_name, "details": self.reason}


class CancellationError(Exception):
    """Raised inside a turn once its cancel event is observed."""
