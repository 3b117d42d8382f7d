import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "TOOLCHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("api_key", "search_api_key")
MASK = "********"


class AppSettings(BaseModel):
    # User-facing settings (mirrors the client's settings dialog)
    api_key: Optional[str] = None
    search_api_key: Optional[str] = None
    endpoint: str = "https://models.inference.ai.azure.com"
    model_name: str = "gpt-4o"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=8000, ge=100, le=8000)
    dark_mode: bool = False

    # Tool backends
    search_endpoint: str = "https://api.tavily.com/search"
    reasoning_endpoint: str = "https://text.pollinations.ai/"
    reasoning_model: str = "openai-reasoning"
    reasoning_seed: Optional[int] = None
    image_base_url: str = "https://pollinations.ai"
    title_model: Optional[str] = None

    # Transport
    max_retries: int = Field(default=3, ge=1)
    retry_backoff_s: float = Field(default=1.0, ge=0.0)
    request_timeout_s: float = 120.0
    stream_responses: bool = False

    # Service
    database_path: str = "toolchat.db"
    upload_dir: str = "uploads"
    upload_max_mb: int = 15
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = MASK
        return data

    def merged(self, updates: Dict[str, Any]) -> "AppSettings":
        """Apply a partial update; masked secrets coming back from the client are ignored."""
        cleaned = {k: v for k, v in updates.items() if not (k in SECRET_FIELDS and v == MASK)}
        return AppSettings(**{**self.model_dump(), **cleaned})

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "api_key": os.getenv("OPENAI_API_KEY"),
        "search_api_key": os.getenv("TAVILY_API_KEY"),
        "endpoint": os.getenv("API_ENDPOINT"),
        "model_name": os.getenv("MODEL_NAME"),
        "temperature": os.getenv("TEMPERATURE"),
        "max_tokens": os.getenv("MAX_TOKENS"),
        "reasoning_endpoint": os.getenv("REASONING_ENDPOINT"),
        "image_base_url": os.getenv("IMAGE_BASE_URL"),
        "database_path": os.getenv("DATABASE_PATH"),
        "upload_dir": os.getenv("UPLOAD_DIR"),
        "upload_max_mb": os.getenv("UPLOAD_MAX_MB"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "stream_responses": os.getenv("STREAM_RESPONSES"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "temperature" in cleaned:
        cleaned["temperature"] = float(cleaned["temperature"])
    if "max_tokens" in cleaned:
        cleaned["max_tokens"] = int(cleaned["max_tokens"])
    if "upload_max_mb" in cleaned:
        cleaned["upload_max_mb"] = int(cleaned["upload_max_mb"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "stream_responses" in cleaned:
        cleaned["stream_responses"] = str(cleaned["stream_responses"]).lower() in ENV_OVERRIDE_TRUE
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
        except json.JSONDecodeError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
