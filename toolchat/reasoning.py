from typing import Any, Dict, List, Optional

import httpx


DEFAULT_REASONING_ENDPOINT = "https://text.pollinations.ai/"


class ReasoningClient:
    """Plain-text client for the external reasoning model."""

    def __init__(
        self,
        endpoint: str = DEFAULT_REASONING_ENDPOINT,
        model: str = "openai-reasoning",
        seed: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint
        self.model = model
        self.seed = seed
        self.client = http_client or httpx.AsyncClient(
            timeout=180,
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )

    async def reason(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"messages": messages, "model": self.model}
        if self.seed is not None:
            payload["seed"] = self.seed
        try:
            resp = await self.client.post(
                self.endpoint,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            return {"error": "http_status", "status_code": e.response.status_code, "detail": e.response.text}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}
        text = resp.text.strip()
        if not text:
            return {"error": "empty_response"}
        return {"text": text}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
