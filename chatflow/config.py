import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CHATFLOW_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("gemini_api_key", "openrouter_api_key", "tavily_api_key", "remote_sync_token")


class AppSettings(BaseModel):
    # Provider credentials
    gemini_api_key: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    tavily_api_key: Optional[str] = None

    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    app_url: str = "http://localhost:8000"
    app_title: str = "chatflow"
    request_timeout_s: float = 60.0

    database_path: str = "chat_data.db"
    client_database_path: str = "chat_client.db"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    max_iterations_default: int = 3
    workflow_max_steps: int = 25

    # Client-side timing knobs (seconds)
    stream_persist_interval_s: float = 1.0
    batch_interval_s: float = 0.5
    notify_debounce_s: float = 0.3
    remote_sync_debounce_s: float = 0.8
    read_retry_delay_s: float = 1.0
    max_read_retries: int = 3

    remote_sync_url: Optional[str] = None
    remote_sync_token: Optional[str] = None

    def provider_keys(self) -> Dict[str, str]:
        keys: Dict[str, str] = {}
        if self.gemini_api_key:
            keys["google"] = self.gemini_api_key
        if self.openrouter_api_key:
            keys["openrouter"] = self.openrouter_api_key
        return keys

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "openrouter_api_key": os.getenv("OPENROUTER_API_KEY"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "gemini_base_url": os.getenv("GEMINI_BASE_URL"),
        "openrouter_base_url": os.getenv("OPENROUTER_BASE_URL"),
        "app_url": os.getenv("APP_URL"),
        "database_path": os.getenv("DATABASE_PATH"),
        "client_database_path": os.getenv("CLIENT_DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
        "max_iterations_default": os.getenv("MAX_ITERATIONS_DEFAULT"),
        "remote_sync_url": os.getenv("REMOTE_SYNC_URL"),
        "remote_sync_token": os.getenv("REMOTE_SYNC_TOKEN"),
        "stream_persist_interval_s": os.getenv("STREAM_PERSIST_INTERVAL_S"),
        "remote_sync_debounce_s": os.getenv("REMOTE_SYNC_DEBOUNCE_S"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "max_iterations_default" in cleaned:
        cleaned["max_iterations_default"] = int(cleaned["max_iterations_default"])
    if "stream_persist_interval_s" in cleaned:
        cleaned["stream_persist_interval_s"] = float(cleaned["stream_persist_interval_s"])
    if "remote_sync_debounce_s" in cleaned:
        cleaned["remote_sync_debounce_s"] = float(cleaned["remote_sync_debounce_s"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # A blank key in config.json should not hide one from the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
