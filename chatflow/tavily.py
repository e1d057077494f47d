import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("uvicorn.error")

SEARCH_URL = "https://api.tavily.com/search"
EXTRACT_URL = "https://api.tavily.com/extract"


class SearchError(Exception):
    pass


class TavilyClient:
    """Web search and page reading for the pro-search task."""

    def __init__(self, api_key: Optional[str], timeout: float = 60.0):
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {"query": query, "search_depth": search_depth, "max_results": max_results}
        if topic in ("general", "news", "finance"):
            payload["topic"] = topic
        return await self._post(SEARCH_URL, payload)

    async def extract(self, urls: List[str], extract_depth: str = "basic") -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        return await self._post(EXTRACT_URL, {"urls": urls, "extract_depth": extract_depth})

    async def search_results(self, query: str, max_results: int = 5) -> List[Dict[str, Any]]:
        """Search and normalize hits to ``{title, link, snippet}``. Raises SearchError on failure."""
        data = await self.search(query, max_results=max_results)
        if data.get("error"):
            raise SearchError(f"Search failed: {data.get('detail') or data['error']}")
        results = []
        for hit in data.get("results") or []:
            if not hit.get("url"):
                continue
            results.append({"title": hit.get("title") or "", "link": hit["url"], "snippet": hit.get("content") or ""})
        return results

    async def read_pages(self, pages: List[Dict[str, Any]], extract_depth: str = "basic") -> List[Dict[str, Any]]:
        """Fetch page bodies for search hits as ``{title, link, content}``; unreadable pages are dropped."""
        if not pages:
            return []
        titles = {page["link"]: page.get("title") or "" for page in pages if page.get("link")}
        data = await self.extract(list(titles), extract_depth=extract_depth)
        if data.get("error"):
            logger.warning("Page extraction failed: %s", data.get("detail") or data["error"])
            return []
        content = []
        for entry in data.get("results") or []:
            url = entry.get("url")
            if url and entry.get("raw_content"):
                content.append({"title": titles.get(url, ""), "link": url, "content": entry["raw_content"]})
        return content

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Dev keys are read from the JSON body; the header covers newer keys.
            payload = {**payload, "api_key": self.api_key}
            headers["X-API-Key"] = self.api_key
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

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
