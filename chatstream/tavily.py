from typing import Any, Dict, List, Optional

import httpx

from chatstream.schemas import SearchImage, SearchResults, SearchSource


class SearchError(Exception):
    def __init__(self, query: str, reason: str, detail: Any = None):
        super().__init__(f"search failed for {query!r}: {reason}")
        self.query = query
        self.reason = reason
        self.detail = detail


def _normalize_images(raw_images: List[Any]) -> List[SearchImage]:
    images: List[SearchImage] = []
    for item in raw_images or []:
        if isinstance(item, str):
            images.append(SearchImage(url=item))
        elif isinstance(item, dict) and item.get("url"):
            images.append(
                SearchImage(
                    url=item["url"],
                    title=item.get("title"),
                    alt=item.get("alt") or item.get("description"),
                )
            )
    return images


def normalize_search_response(query: str, data: Dict[str, Any]) -> SearchResults:
    sources = [
        SearchSource(
            title=item.get("title") or "",
            url=item["url"],
            content=item.get("content") or "",
            score=item.get("score"),
            published_date=item.get("published_date"),
        )
        for item in data.get("results") or []
        if isinstance(item, dict) and item.get("url")
    ]
    return SearchResults(
        answer=data.get("answer") or "",
        sources=sources,
        images=_normalize_images(data.get("images") or []),
        query=data.get("query") or query,
    )


class TavilyClient:
    def __init__(self, api_key: Optional[str], search_depth: str = "advanced", max_results: int = 10):
        self.api_key = api_key
        self.search_depth = search_depth
        self.max_results = max_results
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: Optional[str] = None,
        max_results: Optional[int] = None,
        include_answer: bool = True,
        include_images: bool = True,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        depth = search_depth or self.search_depth
        if depth not in ("basic", "advanced"):
            depth = "advanced"
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": depth,
            "max_results": max_results or self.max_results,
            "include_answer": include_answer,
            "include_images": include_images,
        }
        return await self._post("https://api.tavily.com/search", payload)

    async def search_web(self, query: str) -> SearchResults:
        """Run a search and return normalized results; raises SearchError on any failure."""
        cleaned = (query or "").strip()
        if not cleaned:
            raise SearchError(query, "empty_query")
        data = await self.search(cleaned)
        if data.get("error"):
            raise SearchError(cleaned, data["error"], data.get("detail"))
        return normalize_search_response(cleaned, data)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Tavily's dev keys expect the key in the JSON payload; include it there and keep the header for compatibility.
            payload = {**payload, "api_key": self.api_key}
            headers["X-API-Key"] = self.api_key
        try:
            resp = await self.client.post(
                url,
                json=payload,
                headers=headers,
            )
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
