import asyncio
from typing import Any, Callable, Dict, List, Optional

import httpx

from chatflow.llm import GenerationResult
from chatflow.schemas import Thread, ThreadItem
from chatflow.sync import RemoteUnauthorizedError


class FakeLanguageModel:
    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        reasoning: Optional[List[str]] = None,
        queries: Optional[List[str]] = None,
        questions: Optional[List[str]] = None,
        title: str = "Fake Title",
        text_error: Optional[Exception] = None,
        object_errors: Optional[Dict[str, Exception]] = None,
        delay_seconds: float = 0.0,
        on_text: Optional[Callable[[], None]] = None,
    ) -> None:
        self.chunks = ["Test ", "answer."] if chunks is None else chunks
        self.reasoning = reasoning or []
        self.queries = ["test query"] if queries is None else queries
        self.questions = ["Why?", "How?"] if questions is None else questions
        self.title = title
        self.text_error = text_error
        self.object_errors = object_errors or {}
        self.delay_seconds = delay_seconds
        self.on_text = on_text
        self.api_keys: Dict[str, Optional[str]] = {}
        self.text_calls: List[Dict[str, Any]] = []
        self.object_calls: List[Dict[str, Any]] = []

    def update_keys(self, api_keys: Dict[str, Optional[str]]) -> None:
        self.api_keys = dict(api_keys)

    async def generate_text(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        prompt: Optional[str] = None,
        on_chunk: Optional[Callable[[str, str], None]] = None,
        on_reasoning: Optional[Callable[[str], None]] = None,
        signal: Optional[asyncio.Event] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        self.text_calls.append({"model": model, "messages": messages, "prompt": prompt})
        if self.on_text is not None:
            self.on_text()
        if self.text_error is not None:
            raise self.text_error
        reasoning = ""
        for thought in self.reasoning:
            reasoning += thought
            if on_reasoning:
                on_reasoning(thought)
        text = ""
        for chunk in self.chunks:
            if signal is not None and signal.is_set():
                break
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            text += chunk
            if on_chunk:
                on_chunk(chunk, text)
        return GenerationResult(text=text, reasoning=reasoning, model=model, usage={"total_tokens": 42})

    async def generate_object(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        prompt: str,
        temperature: float = 0.2,
    ) -> Dict[str, Any]:
        if '"queries"' in prompt:
            kind, response = "queries", {"queries": list(self.queries)}
        elif '"questions"' in prompt:
            kind, response = "questions", {"questions": list(self.questions)}
        elif '"title"' in prompt:
            kind, response = "title", {"title": self.title}
        else:
            kind, response = "other", {}
        self.object_calls.append({"kind": kind, "model": model, "messages": messages, "prompt": prompt})
        if kind in self.object_errors:
            raise self.object_errors[kind]
        return response

    def calls_of(self, kind: str) -> List[Dict[str, Any]]:
        return [call for call in self.object_calls if call["kind"] == kind]

    async def close(self) -> None:
        return None


class FakeTavilyClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        results: Optional[List[Dict[str, Any]]] = None,
        pages: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.api_key = api_key
        self.results = (
            [
                {"title": "Result A", "link": "https://a.example", "snippet": "Snippet A"},
                {"title": "Result B", "link": "https://b.example", "snippet": "Snippet B"},
            ]
            if results is None
            else results
        )
        self.pages = (
            [{"title": "Result A", "link": "https://a.example", "content": "Page body A"}]
            if pages is None
            else pages
        )
        self.search_calls: List[Dict[str, Any]] = []
        self.read_calls: List[List[Dict[str, Any]]] = []

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search_results(self, query: str, max_results: int = 5) -> List[Dict[str, Any]]:
        self.search_calls.append({"query": query, "max_results": max_results})
        return list(self.results)

    async def read_pages(self, pages: List[Dict[str, Any]], extract_depth: str = "basic") -> List[Dict[str, Any]]:
        self.read_calls.append(list(pages))
        return list(self.pages)

    async def close(self) -> None:
        return None


class FakeRemoteBackend:
    def __init__(self, threads: Optional[List[Dict[str, Any]]] = None) -> None:
        self.threads = list(threads or [])
        self.pushed: List[Dict[str, Any]] = []
        self.deleted: List[str] = []
        self.unauthorized = False
        self.failing = False
        self.closed = False

    def _check(self) -> None:
        if self.unauthorized:
            raise RemoteUnauthorizedError("remote sync rejected credentials (401)")
        if self.failing:
            raise httpx.ConnectError("remote unavailable")

    async def list_threads(self) -> List[Dict[str, Any]]:
        self._check()
        return list(self.threads)

    async def push_thread(self, thread: Thread, items: List[ThreadItem]) -> None:
        self._check()
        self.pushed.append({"thread": thread, "items": items})

    async def delete_thread(self, thread_id: str) -> None:
        self._check()
        self.deleted.append(thread_id)

    async def close(self) -> None:
        self.closed = True


class ChunkReader:
    """Scripted response body. Exceptions in ``chunks`` are raised from ``read``."""

    def __init__(self, chunks: List[Any], hang: bool = False) -> None:
        self.chunks = list(chunks)
        self.hang = hang
        self.reads = 0

    async def read(self) -> bytes:
        self.reads += 1
        if not self.chunks:
            if self.hang:
                await asyncio.Event().wait()
            return b""
        chunk = self.chunks.pop(0)
        if isinstance(chunk, Exception):
            raise chunk
        return chunk
