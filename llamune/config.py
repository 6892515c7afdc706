import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "LLAMUNE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    ollama_base_url: str = "http://localhost:11434"
    default_model: str = "gemma2:9b"
    default_system_prompt: Optional[str] = None
    database_path: str = "llamune.db"
    host: str = "0.0.0.0"
    port: int = 3000
    request_timeout_s: Optional[float] = None

    # Tool loop and candidate limits
    max_tool_rounds: int = 5
    max_candidates: int = 8

    # Workspace tools
    tool_max_file_bytes: int = 100_000
    tree_max_depth: int = 3
    tree_max_entries: int = 200

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "ollama_base_url": os.getenv("OLLAMA_API_URL"),
        "default_model": os.getenv("DEFAULT_MODEL"),
        "default_system_prompt": os.getenv("DEFAULT_SYSTEM_PROMPT"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "max_tool_rounds": os.getenv("MAX_TOOL_ROUNDS"),
        "max_candidates": os.getenv("MAX_CANDIDATES"),
        "tool_max_file_bytes": os.getenv("TOOL_MAX_FILE_BYTES"),
        "tree_max_depth": os.getenv("TREE_MAX_DEPTH"),
        "tree_max_entries": os.getenv("TREE_MAX_ENTRIES"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("port", "max_tool_rounds", "max_candidates", "tool_max_file_bytes", "tree_max_depth", "tree_max_entries"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    if "request_timeout_s" in cleaned:
        cleaned["request_timeout_s"] = float(cleaned["request_timeout_s"])
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
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
