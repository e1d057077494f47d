import math
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


PROVIDER_GOOGLE = "google"
PROVIDER_OPENROUTER = "openrouter"

PROVIDER_ENV_VARS = {
    PROVIDER_GOOGLE: "GEMINI_API_KEY",
    PROVIDER_OPENROUTER: "OPENROUTER_API_KEY",
}
PROVIDER_NAMES = {
    PROVIDER_GOOGLE: "Google Gemini",
    PROVIDER_OPENROUTER: "OpenRouter",
}


class ChatMode(str, Enum):
    AUTO = "auto"
    PRO = "pro"
    DEEP = "deep"
    GEMINI_2_5_PRO = "gemini-pro-2.5"
    GEMINI_2_5_FLASH = "gemini-flash-2.5"
    GLM_4_5_AIR = "glm-4-5-air"
    DEEPSEEK_CHAT_V3_1 = "deepseek-chat-v3-1"
    DEEPSEEK_R1 = "deepseek-r1"
    LONGCAT_FLASH_CHAT = "longcat-flash-chat"
    GPT_OSS_20B = "gpt-oss-20b"
    DOLPHIN_MISTRAL_24B_VENICE = "dolphin-mistral-24b-venice"
    DOCUMENT_QA = "document-qa"
    IMAGE_GENERATION = "image-generation"


class ModelId(str, Enum):
    GEMINI_2_5_PRO = "gemini-2.5-pro"
    GEMINI_2_5_FLASH = "gemini-2.5-flash"
    GEMINI_2_5_FLASH_IMAGE = "gemini-2.5-flash-image-preview"
    GLM_4_5_AIR = "z-ai/glm-4.5-air:free"
    DEEPSEEK_CHAT_V3_1 = "deepseek/deepseek-chat-v3.1:free"
    DEEPSEEK_R1 = "deepseek/deepseek-r1-0528:free"
    LONGCAT_FLASH_CHAT = "meituan/longcat-flash-chat:free"
    GPT_OSS_20B = "openai/gpt-oss-20b:free"
    DOLPHIN_MISTRAL_24B_VENICE = "cognitivecomputations/dolphin-mistral-24b-venice-edition:free"


def _model(model_id: ModelId, name: str, provider: str, max_tokens: int, context_window: int, **extra: Any) -> dict:
    return {
        "id": model_id.value,
        "name": name,
        "provider": provider,
        "max_tokens": max_tokens,
        "context_window": context_window,
        **extra,
    }


MODELS: List[dict] = [
    _model(ModelId.GEMINI_2_5_FLASH, "Gemini 2.5 Flash", PROVIDER_GOOGLE, 200000, 200000,
           cost_per_1m_input=0.075, cost_per_1m_output=0.30),
    _model(ModelId.GEMINI_2_5_FLASH_IMAGE, "Gemini 2.5 Flash Image Preview", PROVIDER_GOOGLE, 200000, 200000,
           cost_per_1m_input=0.075, cost_per_1m_output=0.30),
    _model(ModelId.GEMINI_2_5_PRO, "Gemini 2.5 Pro", PROVIDER_GOOGLE, 200000, 200000,
           cost_per_1m_input=1.25, cost_per_1m_output=5.00),
    _model(ModelId.GLM_4_5_AIR, "GLM 4.5 Air (OpenRouter Free)", PROVIDER_OPENROUTER, 8000, 128000, is_free=True),
    _model(ModelId.DEEPSEEK_CHAT_V3_1, "DeepSeek Chat v3.1 (OpenRouter Free)", PROVIDER_OPENROUTER, 8000, 128000,
           is_free=True),
    _model(ModelId.DEEPSEEK_R1, "DeepSeek R1 (OpenRouter Free)", PROVIDER_OPENROUTER, 8000, 128000, is_free=True),
    _model(ModelId.LONGCAT_FLASH_CHAT, "LongCat Flash Chat (OpenRouter Free)", PROVIDER_OPENROUTER, 8000, 128000,
           is_free=True),
    _model(ModelId.GPT_OSS_20B, "GPT-OSS 20B (OpenRouter Free)", PROVIDER_OPENROUTER, 8000, 128000, is_free=True),
    _model(ModelId.DOLPHIN_MISTRAL_24B_VENICE, "Dolphin Mistral 24B Venice (OpenRouter Free)", PROVIDER_OPENROUTER,
           8000, 128000, is_free=True),
]
MODELS_BY_ID: Dict[str, dict] = {m["id"]: m for m in MODELS}

_MODE_TO_MODEL = {
    ChatMode.GEMINI_2_5_PRO: ModelId.GEMINI_2_5_PRO,
    ChatMode.GEMINI_2_5_FLASH: ModelId.GEMINI_2_5_FLASH,
    ChatMode.GLM_4_5_AIR: ModelId.GLM_4_5_AIR,
    ChatMode.DEEPSEEK_CHAT_V3_1: ModelId.DEEPSEEK_CHAT_V3_1,
    ChatMode.DEEPSEEK_R1: ModelId.DEEPSEEK_R1,
    ChatMode.LONGCAT_FLASH_CHAT: ModelId.LONGCAT_FLASH_CHAT,
    ChatMode.GPT_OSS_20B: ModelId.GPT_OSS_20B,
    ChatMode.DOLPHIN_MISTRAL_24B_VENICE: ModelId.DOLPHIN_MISTRAL_24B_VENICE,
    ChatMode.IMAGE_GENERATION: ModelId.GEMINI_2_5_FLASH_IMAGE,
}

_MODE_NAMES = {
    ChatMode.AUTO: "Auto (Recommended)",
    ChatMode.DEEP: "Deep Research",
    ChatMode.PRO: "Pro Search",
    ChatMode.GEMINI_2_5_PRO: "Gemini 2.5 Pro",
    ChatMode.GEMINI_2_5_FLASH: "Gemini 2.5 Flash",
    ChatMode.GLM_4_5_AIR: "GLM 4.5 Air",
    ChatMode.DEEPSEEK_CHAT_V3_1: "DeepSeek Chat v3.1",
    ChatMode.DEEPSEEK_R1: "DeepSeek R1",
    ChatMode.LONGCAT_FLASH_CHAT: "LongCat Flash Chat",
    ChatMode.GPT_OSS_20B: "GPT-OSS 20B",
    ChatMode.DOLPHIN_MISTRAL_24B_VENICE: "Dolphin Mistral 24B Venice",
    ChatMode.DOCUMENT_QA: "Document Q&A",
    ChatMode.IMAGE_GENERATION: "Image Generation",
}


def _options(web_search: bool, image_upload: bool, retry: bool, **extra: bool) -> Dict[str, bool]:
    opts = {
        "web_search": web_search,
        "image_upload": image_upload,
        "retry": retry,
        "document_analysis": False,
        "native_internet_access": False,
        "is_new": False,
        "is_auth_required": False,
    }
    opts.update(extra)
    return opts


_OPEN_MODEL = dict(document_analysis=True, native_internet_access=True)

CHAT_MODE_OPTIONS: Dict[ChatMode, Dict[str, bool]] = {
    ChatMode.AUTO: _options(True, True, True, **_OPEN_MODEL),
    ChatMode.DEEP: _options(False, False, False, document_analysis=True),
    ChatMode.PRO: _options(False, False, False, document_analysis=True),
    ChatMode.GEMINI_2_5_PRO: _options(True, True, True, **_OPEN_MODEL),
    ChatMode.GEMINI_2_5_FLASH: _options(True, True, True, **_OPEN_MODEL),
    ChatMode.GLM_4_5_AIR: _options(True, True, True, is_new=True, **_OPEN_MODEL),
    ChatMode.DEEPSEEK_CHAT_V3_1: _options(True, True, True, is_new=True, **_OPEN_MODEL),
    ChatMode.DEEPSEEK_R1: _options(True, True, True, is_new=True, **_OPEN_MODEL),
    ChatMode.LONGCAT_FLASH_CHAT: _options(True, False, True, is_new=True, **_OPEN_MODEL),
    ChatMode.GPT_OSS_20B: _options(True, True, True, is_new=True, **_OPEN_MODEL),
    ChatMode.DOLPHIN_MISTRAL_24B_VENICE: _options(True, True, True, is_new=True, **_OPEN_MODEL),
    ChatMode.DOCUMENT_QA: _options(False, False, True, is_new=True),
    ChatMode.IMAGE_GENERATION: _options(False, True, True, is_new=True),
}


CODE_KEYWORDS = (
    "code", "function", "class", "algorithm", "debug", "error", "bug", "implement", "refactor",
    "optimize", "python", "javascript", "typescript", "java", "c++", "rust", "go", "sql", "api",
    "regex", "git",
)
MATH_KEYWORDS = (
    "calculate", "solve", "equation", "math", "proof", "theorem", "reasoning", "logic", "derive",
    "compute", "algorithm complexity",
)
NEWS_KEYWORDS = ("news", "latest", "recent", "today", "yesterday", "current", "breaking", "trending")
CREATIVE_KEYWORDS = (
    "write", "story", "poem", "creative", "fiction", "essay", "article", "blog", "script", "dialogue",
    "character",
)
IMAGE_KEYWORDS = ("image", "photo", "picture", "screenshot", "diagram", "chart", "graph", "visual")
RESEARCH_KEYWORDS = ("research", "analyze", "compare", "comprehensive", "detailed", "explain")
TRANSLATION_KEYWORDS = ("translate", "translation", "language")
MATH_SYMBOLS = ("∫", "∑", "∏", "∂")
MATH_STRONG_WORDS = ("prove", "theorem")

CATEGORY_THRESHOLD = 2
RESEARCH_MIN_TOKENS = 50
TRANSLATION_MAX_TOKENS = 30
SHORT_QUERY_TOKENS = 20
TOKENS_PER_WORD = 1.35

_PATTERNS: Dict[str, "re.Pattern[str]"] = {}


def _pattern(keyword: str) -> "re.Pattern[str]":
    pattern = _PATTERNS.get(keyword)
    if pattern is None:
        # Whole-word match: "go" must not fire on "good", "c++" still matches.
        pattern = re.compile(r"(?<!\w)" + re.escape(keyword) + r"(?!\w)", re.IGNORECASE)
        _PATTERNS[keyword] = pattern
    return pattern


def keyword_score(query: str, keywords: Iterable[str]) -> int:
    return sum(1 for word in keywords if _pattern(word).search(query or ""))


def count_tokens(query: str) -> int:
    return len((query or "").split())


def _mentions_recent_year(query: str, now: Optional[datetime] = None) -> bool:
    year = (now or datetime.now()).year
    found = {int(match) for match in re.findall(r"(?<!\d)(\d{4})(?!\d)", query or "")}
    return bool(found & {year, year - 1})


def _is_code_query(query: str) -> bool:
    return keyword_score(query, CODE_KEYWORDS) >= CATEGORY_THRESHOLD


def _is_math_query(query: str) -> bool:
    if keyword_score(query, MATH_KEYWORDS) >= CATEGORY_THRESHOLD:
        return True
    if keyword_score(query, MATH_STRONG_WORDS) > 0:
        return True
    return any(symbol in (query or "") for symbol in MATH_SYMBOLS)


def _is_recency_query(query: str, now: Optional[datetime] = None) -> bool:
    return _mentions_recent_year(query, now) or keyword_score(query, NEWS_KEYWORDS) >= CATEGORY_THRESHOLD


def _is_creative_query(query: str) -> bool:
    return keyword_score(query, CREATIVE_KEYWORDS) >= CATEGORY_THRESHOLD


def get_chat_mode_name(mode: ChatMode) -> str:
    return _MODE_NAMES.get(ChatMode(mode), str(mode))


def get_model_from_chat_mode(mode: Optional[str] = None) -> str:
    try:
        key = ChatMode(mode) if mode else None
    except ValueError:
        key = None
    return _MODE_TO_MODEL.get(key, ModelId.GEMINI_2_5_FLASH).value


def get_provider_for_model(model_id: str) -> Optional[str]:
    model = MODELS_BY_ID.get(model_id)
    return model["provider"] if model else None


def get_provider_for_mode(mode: Optional[str]) -> Optional[str]:
    return get_provider_for_model(get_model_from_chat_mode(mode))


def get_chat_mode_max_tokens(mode: Optional[str]) -> int:
    provider = get_provider_for_mode(mode)
    if mode in (ChatMode.PRO, ChatMode.DEEP) or provider == PROVIDER_GOOGLE:
        return 500000
    return 128000


def select_mode_for_query(query: str, has_image: bool = False, now: Optional[datetime] = None) -> ChatMode:
    """Pick a concrete mode for an Auto request. First matching category wins."""
    length = count_tokens(query)

    if has_image:
        return ChatMode.GEMINI_2_5_FLASH
    code_query = _is_code_query(query)
    # Textual image cues yield to a query that already reads as code.
    if keyword_score(query, IMAGE_KEYWORDS) > 0 and not code_query:
        return ChatMode.GEMINI_2_5_FLASH
    if code_query:
        return ChatMode.DEEPSEEK_CHAT_V3_1
    if _is_math_query(query):
        return ChatMode.DEEPSEEK_R1
    if _is_recency_query(query, now):
        return ChatMode.LONGCAT_FLASH_CHAT
    if length > RESEARCH_MIN_TOKENS or keyword_score(query, RESEARCH_KEYWORDS) > 0:
        return ChatMode.GEMINI_2_5_PRO
    if _is_creative_query(query):
        return ChatMode.GLM_4_5_AIR
    if keyword_score(query, TRANSLATION_KEYWORDS) > 0 and length < TRANSLATION_MAX_TOKENS:
        return ChatMode.GEMINI_2_5_FLASH
    if length < SHORT_QUERY_TOKENS:
        return ChatMode.GEMINI_2_5_FLASH
    return ChatMode.DEEPSEEK_CHAT_V3_1


def get_model_selection_reason(query: str, mode: ChatMode) -> str:
    if mode == ChatMode.GEMINI_2_5_FLASH:
        if keyword_score(query, ("image", "photo", "picture")) > 0:
            return "Multimodal capabilities for image analysis"
        return "Fast response for quick queries"
    if mode == ChatMode.GEMINI_2_5_PRO:
        return "Deep research and comprehensive analysis"
    if mode == ChatMode.DEEPSEEK_CHAT_V3_1:
        if keyword_score(query, CODE_KEYWORDS) > 0:
            return "Optimized for coding tasks"
        return "Balanced performance for general queries"
    if mode == ChatMode.DEEPSEEK_R1:
        return "Advanced reasoning with chain-of-thought"
    if mode == ChatMode.LONGCAT_FLASH_CHAT:
        return "Real-time information with internet access"
    if mode == ChatMode.GLM_4_5_AIR:
        return "Creative content generation"
    return "General-purpose model"


def select_openrouter_fallback(query: str, now: Optional[datetime] = None) -> ChatMode:
    if _is_code_query(query):
        return ChatMode.DEEPSEEK_CHAT_V3_1
    if _is_math_query(query):
        return ChatMode.DEEPSEEK_R1
    if _is_recency_query(query, now):
        return ChatMode.LONGCAT_FLASH_CHAT
    if _is_creative_query(query):
        return ChatMode.GLM_4_5_AIR
    return ChatMode.DEEPSEEK_CHAT_V3_1


def select_gemini_fallback(query: str, has_image: bool = False) -> ChatMode:
    if has_image:
        return ChatMode.GEMINI_2_5_FLASH
    return ChatMode.GEMINI_2_5_PRO if count_tokens(query) > RESEARCH_MIN_TOKENS else ChatMode.GEMINI_2_5_FLASH


class ProviderConfigError(Exception):
    def __init__(self, message: str, env_var: Optional[str] = None):
        super().__init__(message)
        self.env_var = env_var


class MissingProviderKeyError(ProviderConfigError):
    def __init__(self, provider: str):
        env_var = PROVIDER_ENV_VARS.get(provider, "API_KEY")
        name = PROVIDER_NAMES.get(provider, provider)
        super().__init__(
            f"Missing {name} API credentials. Set the {env_var} environment variable "
            "or provide a personal key in Settings -> API Keys.",
            env_var=env_var,
        )
        self.provider = provider


@dataclass
class ModeResolution:
    mode: ChatMode
    changed: bool = False
    message: Optional[str] = None


def _has_key(api_keys: Mapping[str, Optional[str]], provider: Optional[str]) -> bool:
    return bool(provider and api_keys.get(provider))


def ensure_provider_availability(
    mode: ChatMode,
    query: str,
    has_image: bool,
    api_keys: Mapping[str, Optional[str]],
    now: Optional[datetime] = None,
) -> ModeResolution:
    provider = get_provider_for_mode(mode)
    if not provider or _has_key(api_keys, provider):
        return ModeResolution(mode=ChatMode(mode))

    if provider == PROVIDER_GOOGLE:
        if has_image:
            raise ProviderConfigError(
                "Image questions in Auto mode require a configured GEMINI_API_KEY. "
                "Please add your Gemini key or remove the image.",
                env_var="GEMINI_API_KEY",
            )
        fallback = select_openrouter_fallback(query, now)
        if not _has_key(api_keys, get_provider_for_mode(fallback)):
            raise ProviderConfigError(
                "Auto mode needs at least one provider configured. Please set OPENROUTER_API_KEY "
                "to enable OpenRouter models or add a personal key in Settings -> API Keys.",
                env_var="OPENROUTER_API_KEY",
            )
        return ModeResolution(
            mode=fallback,
            changed=True,
            message="Fallback to OpenRouter because Gemini API key is missing",
        )

    fallback = select_gemini_fallback(query, has_image)
    if not _has_key(api_keys, get_provider_for_mode(fallback)):
        raise ProviderConfigError(
            "Auto mode needs a Gemini API key when OpenRouter is unavailable. Please set GEMINI_API_KEY "
            "or provide a personal key in Settings -> API Keys.",
            env_var="GEMINI_API_KEY",
        )
    return ModeResolution(
        mode=fallback,
        changed=True,
        message="Fallback to Gemini because OpenRouter API key is missing",
    )


def resolve_request_mode(
    mode: ChatMode,
    prompt: str,
    has_image: bool,
    api_keys: Mapping[str, Optional[str]],
    requested_mode: Optional[ChatMode] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[ChatMode, str]:
    """Resolve the mode a completion request will actually run with.

    Returns ``(mode, selection_reason)``. Raises ProviderConfigError when an
    Auto request cannot be served by any configured provider.
    """
    requested = ChatMode(requested_mode or mode)
    resolved = ChatMode(mode)
    if requested == ChatMode.AUTO or resolved == ChatMode.AUTO:
        resolved = select_mode_for_query(prompt, has_image, now)

    note: Optional[str] = None
    if requested == ChatMode.AUTO:
        resolution = ensure_provider_availability(resolved, prompt, has_image, api_keys, now)
        if resolution.changed:
            resolved = resolution.mode
            note = resolution.message

    if note:
        reason = f"{get_model_selection_reason(prompt, resolved)} • {note}"
    elif not reason or requested == ChatMode.AUTO:
        reason = get_model_selection_reason(prompt, resolved)
    return resolved, reason


def has_api_key_for_chat_mode(mode: ChatMode, api_keys: Mapping[str, Optional[str]]) -> bool:
    if ChatMode(mode) == ChatMode.AUTO:
        return any(api_keys.get(p) for p in PROVIDER_ENV_VARS)
    return _has_key(api_keys, get_provider_for_mode(mode))


def estimate_tokens_by_word_count(text: str) -> int:
    words = (text or "").split()
    return int(math.ceil(len(words) * TOKENS_PER_WORD))


def _message_tokens(message: Dict[str, Any]) -> int:
    content = message.get("content")
    if isinstance(content, str):
        return estimate_tokens_by_word_count(content)
    if isinstance(content, list):
        return sum(
            estimate_tokens_by_word_count(part.get("text") or "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return 0


def estimate_tokens_for_messages(messages: List[Dict[str, Any]]) -> int:
    return sum(_message_tokens(m) for m in messages)


def trim_message_history(messages: List[Dict[str, Any]], mode: ChatMode) -> Tuple[List[Dict[str, Any]], int]:
    """Drop the oldest history until the estimate fits the mode's budget.

    The latest message is always kept.
    """
    if len(messages) <= 1:
        return list(messages), estimate_tokens_for_messages(messages)
    max_tokens = get_chat_mode_max_tokens(mode)
    history = [(m, _message_tokens(m)) for m in messages[:-1]]
    latest = messages[-1]
    total = sum(tokens for _, tokens in history) + _message_tokens(latest)
    while total > max_tokens and history:
        _, removed = history.pop(0)
        total -= removed
    return [m for m, _ in history] + [latest], total


def describe_modes(api_keys: Mapping[str, Optional[str]]) -> List[dict]:
    described = []
    for mode in ChatMode:
        described.append(
            {
                "mode": mode.value,
                "name": get_chat_mode_name(mode),
                "model": get_model_from_chat_mode(mode),
                "provider": get_provider_for_mode(mode),
                "available": has_api_key_for_chat_mode(mode, api_keys),
                **CHAT_MODE_OPTIONS[mode],
            }
        )
    return described
