from datetime import datetime

import pytest

from chatflow.modes import (
    CODE_KEYWORDS,
    ChatMode,
    ProviderConfigError,
    describe_modes,
    ensure_provider_availability,
    get_chat_mode_max_tokens,
    get_model_from_chat_mode,
    get_model_selection_reason,
    keyword_score,
    resolve_request_mode,
    select_mode_for_query,
    trim_message_history,
)

NOW = datetime(2026, 10, 18, 12, 0)
BOTH_KEYS = {"google": "g-key", "openrouter": "o-key"}


@pytest.mark.parametrize(
    "query,has_image,expected",
    [
        ("What is in this picture?", True, ChatMode.GEMINI_2_5_FLASH),
        ("Describe the chart for me", False, ChatMode.GEMINI_2_5_FLASH),
        ("Can you debug this python function?", False, ChatMode.DEEPSEEK_CHAT_V3_1),
        ("Draw a diagram of the python class hierarchy and debug it", False, ChatMode.DEEPSEEK_CHAT_V3_1),
        ("Solve this equation for x", False, ChatMode.DEEPSEEK_R1),
        ("prove that the square root of two is irrational", False, ChatMode.DEEPSEEK_R1),
        ("∑ of the first n integers", False, ChatMode.DEEPSEEK_R1),
        ("Who won the election in 2026?", False, ChatMode.LONGCAT_FLASH_CHAT),
        ("latest breaking news on the rover", False, ChatMode.LONGCAT_FLASH_CHAT),
        ("Explain how photosynthesis works", False, ChatMode.GEMINI_2_5_PRO),
        ("Write a short story about a dragon", False, ChatMode.GLM_4_5_AIR),
        ("Translate good morning into French", False, ChatMode.GEMINI_2_5_FLASH),
        ("Hi there", False, ChatMode.GEMINI_2_5_FLASH),
    ],
)
def test_select_mode_for_query(query, has_image, expected):
    assert select_mode_for_query(query, has_image, now=NOW) == expected


def test_select_mode_old_year_is_not_recent():
    assert select_mode_for_query("Who won the election in 2019?", now=NOW) == ChatMode.GEMINI_2_5_FLASH


def test_select_mode_by_length():
    assert select_mode_for_query(" ".join(["lorem"] * 60), now=NOW) == ChatMode.GEMINI_2_5_PRO
    assert select_mode_for_query(" ".join(["lorem"] * 25), now=NOW) == ChatMode.DEEPSEEK_CHAT_V3_1


def test_keywords_match_whole_words():
    assert keyword_score("good morning, how is it going", CODE_KEYWORDS) == 0
    assert keyword_score("I like c++ and go", CODE_KEYWORDS) == 2


def test_selection_reasons():
    assert get_model_selection_reason("look at this photo", ChatMode.GEMINI_2_5_FLASH) == (
        "Multimodal capabilities for image analysis"
    )
    assert get_model_selection_reason("Hi", ChatMode.GEMINI_2_5_FLASH) == "Fast response for quick queries"
    assert get_model_selection_reason("call the api", ChatMode.DEEPSEEK_CHAT_V3_1) == "Optimized for coding tasks"
    assert get_model_selection_reason("Hi", ChatMode.DEEPSEEK_CHAT_V3_1) == "Balanced performance for general queries"
    assert get_model_selection_reason("Hi", ChatMode.DEEP) == "General-purpose model"


def test_model_lookup_defaults_to_flash():
    assert get_model_from_chat_mode(ChatMode.DEEPSEEK_R1) == "deepseek/deepseek-r1-0528:free"
    assert get_model_from_chat_mode("not-a-mode") == "gemini-2.5-flash"
    assert get_model_from_chat_mode(None) == "gemini-2.5-flash"


def test_availability_keeps_mode_with_key():
    resolution = ensure_provider_availability(ChatMode.GEMINI_2_5_FLASH, "Hi", False, BOTH_KEYS)
    assert resolution.mode == ChatMode.GEMINI_2_5_FLASH
    assert not resolution.changed


def test_availability_falls_back_to_openrouter():
    resolution = ensure_provider_availability(ChatMode.GEMINI_2_5_FLASH, "Hi there", False, {"openrouter": "o"})
    assert resolution.mode == ChatMode.DEEPSEEK_CHAT_V3_1
    assert resolution.changed
    assert resolution.message == "Fallback to OpenRouter because Gemini API key is missing"


def test_availability_falls_back_to_gemini():
    resolution = ensure_provider_availability(ChatMode.DEEPSEEK_R1, "Solve this equation", False, {"google": "g"})
    assert resolution.mode == ChatMode.GEMINI_2_5_FLASH
    assert resolution.message == "Fallback to Gemini because OpenRouter API key is missing"


def test_availability_image_requires_gemini():
    with pytest.raises(ProviderConfigError) as excinfo:
        ensure_provider_availability(ChatMode.GEMINI_2_5_FLASH, "What is this?", True, {"openrouter": "o"})
    assert excinfo.value.env_var == "GEMINI_API_KEY"


def test_availability_without_any_key():
    with pytest.raises(ProviderConfigError) as excinfo:
        ensure_provider_availability(ChatMode.GEMINI_2_5_FLASH, "Hi", False, {})
    assert excinfo.value.env_var == "OPENROUTER_API_KEY"


def test_resolve_auto_request():
    mode, reason = resolve_request_mode(ChatMode.AUTO, "Hi there", False, BOTH_KEYS, now=NOW)
    assert mode == ChatMode.GEMINI_2_5_FLASH
    assert reason == "Fast response for quick queries"


def test_resolve_auto_request_notes_fallback():
    mode, reason = resolve_request_mode(ChatMode.AUTO, "Hi there", False, {"openrouter": "o"}, now=NOW)
    assert mode == ChatMode.DEEPSEEK_CHAT_V3_1
    assert reason == (
        "Balanced performance for general queries • Fallback to OpenRouter because Gemini API key is missing"
    )


def test_resolve_recomputes_provisional_auto_mode():
    mode, _ = resolve_request_mode(
        ChatMode.DEEPSEEK_CHAT_V3_1,
        "Hi there",
        False,
        BOTH_KEYS,
        requested_mode=ChatMode.AUTO,
        reason="client guess",
        now=NOW,
    )
    assert mode == ChatMode.GEMINI_2_5_FLASH


def test_resolve_explicit_mode_keeps_reason_and_skips_key_check():
    mode, reason = resolve_request_mode(ChatMode.GLM_4_5_AIR, "Hi", False, {}, reason="picked by user")
    assert mode == ChatMode.GLM_4_5_AIR
    assert reason == "picked by user"


def test_trim_message_history_drops_oldest():
    big = {"role": "user", "content": " ".join(["w"] * 100000)}
    small = {"role": "assistant", "content": "hello there"}
    latest = {"role": "user", "content": "hi"}
    trimmed, tokens = trim_message_history([big, small, latest], ChatMode.GLM_4_5_AIR)
    assert trimmed == [small, latest]
    assert tokens == 5


def test_trim_message_history_keeps_latest_even_when_over_budget():
    big = {"role": "user", "content": " ".join(["w"] * 100000)}
    trimmed, tokens = trim_message_history([big], ChatMode.GLM_4_5_AIR)
    assert trimmed == [big]
    assert tokens == 135000


def test_max_tokens_per_mode():
    assert get_chat_mode_max_tokens(ChatMode.GLM_4_5_AIR) == 128000
    assert get_chat_mode_max_tokens(ChatMode.GEMINI_2_5_PRO) == 500000
    assert get_chat_mode_max_tokens(ChatMode.PRO) == 500000


def test_describe_modes_availability():
    described = {entry["mode"]: entry for entry in describe_modes({"openrouter": "o"})}
    assert described["auto"]["available"] is True
    assert described["glm-4-5-air"]["available"] is True
    assert described["gemini-pro-2.5"]["available"] is False
    assert described["pro"]["web_search"] is False
    assert described["longcat-flash-chat"]["image_upload"] is False
