import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "TURNPILOT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("llm_api_key", "tavily_api_key")
MASKED_SECRET = "********"

DEFAULT_PERSONA = (
    "Friendly, precise and concise. Prefer clear structure (short paragraphs, lists, code blocks) "
    "and admit uncertainty instead of guessing."
)
DEFAULT_CAPABILITIES = (
    "- Web search for current events and live data.\n"
    "- Reading and summarizing a web page from a URL.\n"
    "- Image and document analysis (PDF or text files).\n"
    "- 3D molecule lookup with formula, weight and IUPAC name.\n"
    "- Step-by-step thinking for complex problems.\n"
    "- Long-term memory of stable facts about the user."
)


class ModelOption(BaseModel):
    id: str
    display_name: str

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    lm_studio_base_url: str = "http://127.0.0.1:1234/v1"
    llm_api_key: Optional[str] = None
    chat_model: str = "qwen/qwen3-vl-8b"
    utility_model: str = "qwen/qwen3-vl-4b"
    models: list[ModelOption] = Field(
        default_factory=lambda: [
            ModelOption(id="qwen/qwen3-vl-8b", display_name="TurnPilot"),
            ModelOption(id="qwen/qwen3-vl-4b", display_name="TurnPilot Lite"),
        ]
    )
    assistant_name: str = "TurnPilot"
    persona: str = DEFAULT_PERSONA
    creator_profile: str = ""
    capabilities: str = DEFAULT_CAPABILITIES
    max_output_tokens: Optional[int] = None
    request_timeout_s: float = 60.0

    tavily_api_key: Optional[str] = None
    search_max_results: int = 5
    search_depth: str = "basic"
    extract_depth: str = "basic"
    url_max_chars: int = 12000
    pubchem_base_url: str = "https://pubchem.ncbi.nlm.nih.gov/rest/pug"

    database_path: str = "turnpilot.db"
    host: str = "0.0.0.0"
    port: int = 8000

    elapsed_tick_ms: int = 50
    thinking_tick_ms: int = 100
    long_tool_use_s: float = 20.0
    summary_interval: int = 20
    summary_context_limit: int = 10

    def display_name_for(self, model_id: Optional[str]) -> str:
        target = model_id or self.chat_model
        for option in self.models:
            if option.id == target:
                return option.display_name
        return self.assistant_name

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = MASKED_SECRET
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "lm_studio_base_url": os.getenv("LM_STUDIO_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY"),
        "chat_model": os.getenv("CHAT_MODEL"),
        "utility_model": os.getenv("UTILITY_MODEL"),
        "assistant_name": os.getenv("ASSISTANT_NAME"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "search_max_results": os.getenv("SEARCH_MAX_RESULTS"),
        "search_depth": os.getenv("SEARCH_DEPTH"),
        "extract_depth": os.getenv("EXTRACT_DEPTH"),
        "url_max_chars": os.getenv("URL_MAX_CHARS"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "long_tool_use_s": os.getenv("LONG_TOOL_USE_S"),
        "summary_interval": os.getenv("SUMMARY_INTERVAL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("max_output_tokens", "search_max_results", "url_max_chars", "port", "summary_interval"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    if "long_tool_use_s" in cleaned:
        cleaned["long_tool_use_s"] = float(cleaned["long_tool_use_s"])
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
