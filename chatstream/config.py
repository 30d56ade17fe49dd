import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CHATSTREAM_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    llm_base_url: str = "http://127.0.0.1:1234/v1"
    llm_api_key: Optional[str] = None

    # Per-role endpoints/models
    chat_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="qwen/qwen3-vl-8b")
    )
    title_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="qwen/qwen3-vl-4b")
    )
    image_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:1234/v1", model_id="gpt-image-1")
    )
    image_size: str = "1024x1024"

    tavily_api_key: Optional[str] = None
    search_depth: str = Field(default="advanced")
    max_results: int = 10
    database_path: str = "chatstream.db"
    host: str = "0.0.0.0"
    port: int = 8000
    temperature: float = 0.7
    max_output_tokens: Optional[int] = None
    ui_throttle_ms: int = 16
    history_limit: int = 20
    persist_search_results: bool = True
    rehydrate_images: bool = True
    generate_titles: bool = True

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("tavily_api_key", "llm_api_key"):
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY"),
        "chat_model": os.getenv("CHAT_MODEL"),
        "title_model": os.getenv("TITLE_MODEL"),
        "image_model": os.getenv("IMAGE_MODEL"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "search_depth": os.getenv("SEARCH_DEPTH"),
        "max_results": os.getenv("MAX_RESULTS"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "ui_throttle_ms": os.getenv("UI_THROTTLE_MS"),
        "persist_search_results": os.getenv("PERSIST_SEARCH_RESULTS"),
        "rehydrate_images": os.getenv("REHYDRATE_IMAGES"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("max_results", "port", "ui_throttle_ms"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("persist_search_results", "rehydrate_images"):
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _apply_endpoint_overrides(merged: Dict[str, Any], env_data: Dict[str, Any], allow_env_overrides: bool) -> None:
    """Fold CHAT_MODEL/TITLE_MODEL/IMAGE_MODEL and LLM_BASE_URL into the per-role endpoint blocks."""
    defaults = AppSettings()
    base_url = env_data.get("llm_base_url")
    for key, env_key in (
        ("chat_endpoint", "chat_model"),
        ("title_endpoint", "title_model"),
        ("image_endpoint", "image_model"),
    ):
        model_id = merged.pop(env_key, None)
        endpoint = merged.get(key)
        from_file = isinstance(endpoint, dict)
        if not from_file:
            endpoint = getattr(defaults, key).model_dump()
        # Endpoints written in config.json only move when env overrides are enabled.
        can_override = allow_env_overrides or not from_file
        updated = False
        if model_id and can_override:
            endpoint["model_id"] = model_id
            updated = True
        if base_url and can_override:
            endpoint["base_url"] = base_url
            updated = True
        if updated:
            merged[key] = endpoint


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("tavily_api_key") and env_data.get("tavily_api_key"):
        merged["tavily_api_key"] = env_data["tavily_api_key"]
    _apply_endpoint_overrides(merged, env_data, allow_env_overrides)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
