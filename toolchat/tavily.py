from typing import Any, Dict, List, Optional

import httpx


DEFAULT_SEARCH_ENDPOINT = "https://api.tavily.com/search"


class TavilyClient:
    def __init__(
        self,
        api_key: Optional[str],
        endpoint: str = DEFAULT_SEARCH_ENDPOINT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.client = http_client or httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        include_answer: bool = True,
        time_range: Optional[str] = None,
        days: Optional[int] = None,
        include_raw_content: Optional[bool] = None,
        include_images: Optional[bool] = None,
        include_image_descriptions: Optional[bool] = None,
        include_domains: Optional[List[str]] = None,
        exclude_domains: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": include_answer,
        }
        optional = {
            "time_range": time_range,
            "days": days,
            "include_raw_content": include_raw_content,
            "include_images": include_images,
            "include_image_descriptions": include_image_descriptions,
            "include_domains": include_domains,
            "exclude_domains": exclude_domains,
        }
        # Only forward what the caller actually set.
        payload.update({key: value for key, value in optional.items() if value is not None})
        return await self._post(self.endpoint, payload)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Shared POST helper; failures come back as an error dict instead of raising."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Tavily accepts the key in the JSON body; keep the bearer header for proxies that expect it.
            payload = {**payload, "api_key": self.api_key}
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}
        except ValueError as e:
            return {"error": "invalid_json", "detail": str(e)}

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
