import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Callable, Dict, List, Mapping, Optional

import httpx

from .modes import (
    PROVIDER_GOOGLE,
    PROVIDER_OPENROUTER,
    MissingProviderKeyError,
    estimate_tokens_by_word_count,
    get_provider_for_model,
)


ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class ProviderRequestError(Exception):
    def __init__(self, provider: str, status_code: Optional[int], detail: str):
        super().__init__(f"{provider} request failed ({status_code or 'network'}): {detail}")
        self.provider = provider
        self.status_code = status_code
        self.detail = detail


@dataclass
class GenerationResult:
    text: str
    reasoning: str = ""
    model: str = ""
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("total_tokens") or estimate_tokens_by_word_count(self.text))


def parse_json_object(raw: str) -> Optional[dict]:
    text = _FENCE_RE.sub("", (raw or "").strip())
    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except ValueError:
        pass
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start:end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


class ProviderClient:
    def __init__(
        self,
        api_keys: Mapping[str, Optional[str]],
        *,
        gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai",
        openrouter_base_url: str = "https://openrouter.ai/api/v1",
        app_url: str = "http://localhost:8000",
        app_title: str = "chatflow",
        timeout: float = 60.0,
    ):
        self.api_keys: Dict[str, Optional[str]] = dict(api_keys)
        self.base_urls = {
            PROVIDER_GOOGLE: gemini_base_url.rstrip("/"),
            PROVIDER_OPENROUTER: openrouter_base_url.rstrip("/"),
        }
        self.app_url = app_url
        self.app_title = app_title
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "ProviderClient":
        return cls(
            settings.provider_keys(),
            gemini_base_url=settings.gemini_base_url,
            openrouter_base_url=settings.openrouter_base_url,
            app_url=settings.app_url,
            app_title=settings.app_title,
            timeout=settings.request_timeout_s,
        )

    def update_keys(self, api_keys: Mapping[str, Optional[str]]) -> None:
        self.api_keys = dict(api_keys)

    def _provider(self, model: str) -> str:
        return get_provider_for_model(model) or PROVIDER_OPENROUTER

    def _headers(self, provider: str) -> Dict[str, str]:
        key = self.api_keys.get(provider)
        if not key:
            raise MissingProviderKeyError(provider)
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {key}"}
        if provider == PROVIDER_OPENROUTER:
            headers["HTTP-Referer"] = self.app_url
            headers["X-Title"] = self.app_title
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if isinstance(content, str):
                if not content.strip():
                    continue
                sanitized.append({"role": role, "content": content})
            elif isinstance(content, list):
                parts = []
                for part in content:
                    if not isinstance(part, dict):
                        continue
                    if part.get("type") == "text" and part.get("text"):
                        parts.append({"type": "text", "text": part["text"]})
                    elif part.get("type") == "image" and part.get("image"):
                        parts.append({"type": "image_url", "image_url": {"url": part["image"]}})
                    elif part.get("type") == "image_url" and part.get("image_url"):
                        parts.append(part)
                if parts:
                    sanitized.append({"role": role, "content": parts})
        return sanitized

    def _build_payload(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        prompt: Optional[str],
        temperature: float,
        max_tokens: Optional[int],
        stream: bool,
        response_format: Optional[dict],
    ) -> Dict[str, Any]:
        combined = list(messages)
        if prompt:
            combined = [{"role": "system", "content": prompt}, *combined]
        cleaned = self._sanitize_messages(combined)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "stream": stream,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if response_format:
            payload["response_format"] = response_format
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            if isinstance(err, str):
                return err
        return json.dumps(data, ensure_ascii=True)

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        prompt: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        response_format: Optional[dict] = None,
    ) -> Dict[str, Any]:
        provider = self._provider(model)
        headers = self._headers(provider)
        payload = self._build_payload(model, messages, prompt, temperature, max_tokens, False, response_format)
        url = f"{self.base_urls[provider]}/chat/completions"
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderRequestError(provider, exc.response.status_code, self._error_detail(exc.response)) from exc
        except httpx.RequestError as exc:
            raise ProviderRequestError(provider, None, str(exc)) from exc
        return resp.json()

    async def stream_deltas(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        prompt: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
    ) -> AsyncGenerator[Dict[str, Any], None]:
        provider = self._provider(model)
        headers = self._headers(provider)
        payload = self._build_payload(model, messages, prompt, temperature, max_tokens, True, None)
        url = f"{self.base_urls[provider]}/chat/completions"
        try:
            async with self.client.stream("POST", url, json=payload, headers=headers) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise ProviderRequestError(provider, resp.status_code, self._error_detail(resp))
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        yield json.loads(chunk)
                    except ValueError:
                        continue
        except httpx.RequestError as exc:
            raise ProviderRequestError(provider, None, str(exc)) from exc

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
        text = ""
        reasoning = ""
        usage: Dict[str, Any] = {}
        async for data in self.stream_deltas(model, messages, prompt, temperature, max_tokens):
            if signal is not None and signal.is_set():
                break
            if isinstance(data.get("usage"), dict):
                usage = data["usage"]
            choices = data.get("choices") or []
            if not choices:
                continue
            delta = choices[0].get("delta") or {}
            thought = delta.get("reasoning") or delta.get("reasoning_content")
            if thought:
                reasoning += thought
                if on_reasoning:
                    on_reasoning(thought)
            content = delta.get("content")
            if content:
                text += content
                if on_chunk:
                    on_chunk(content, text)
        return GenerationResult(text=text, reasoning=reasoning, model=model, usage=usage)

    async def generate_object(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        prompt: str,
        temperature: float = 0.2,
    ) -> Dict[str, Any]:
        data = await self.chat_completion(
            model=model,
            messages=messages,
            prompt=f"{prompt}\n\nRespond with a single JSON object only.",
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        choices = data.get("choices") or []
        content = ((choices[0].get("message") or {}).get("content") if choices else "") or ""
        parsed = parse_json_object(content)
        if parsed is None:
            raise ValueError("Model did not return a JSON object")
        return parsed

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
