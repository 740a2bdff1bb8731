"""Configuration management for the Turn Ledger service."""
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Deployment config file (instructions, documents, provider selection)
CONFIG_PATH = os.getenv(
    "CONFIG_PATH",
    str(Path(__file__).parent.parent / "config" / "config.json")
)

# Turn Store Configuration
TURN_STORE_BACKEND = os.getenv("TURN_STORE_BACKEND", "sqlite")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./conversation.db")
SUPABASE_TURNS_TABLE = os.getenv("SUPABASE_TURNS_TABLE", "turns")

# Prompt pieces the Context Assembler knows how to place
PROMPT_PARTS = ("instructions", "retrieved_context", "history", "user_prompt")
DEFAULT_PROMPT_ORDER = PROMPT_PARTS

# Inference backends the service can build
SUPPORTED_PROVIDERS = ("groq", "ollama", "openai", "anthropic")

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

_ENV_REFERENCE = re.compile(r"^\$\{(.+)\}$")


class ConfigError(Exception):
    """Raised when the deployment configuration cannot be used."""


@dataclass(frozen=True)
class ProviderSettings:
    """Settings for the selected inference backend."""
    name: str
    model: str
    timeout: float = 300.0
    max_tokens: int = 1024
    temperature: float = 0.7
    api_key: Optional[str] = None
    host: Optional[str] = None
    endpoint: Optional[str] = None
    response_format: Optional[str] = "json"
    organization: Optional[str] = None


@dataclass(frozen=True)
class RetrievalSettings:
    """Settings for the document retrieval collaborator."""
    documents_path: Optional[str] = None
    max_results: int = 3
    min_score: float = 1.0
    timeout: float = 5.0
    chunk_size: int = 500
    chunk_overlap: int = 50


@dataclass(frozen=True)
class Settings:
    """
    Immutable deployment settings, loaded once at startup.

    The instruction text is read when the settings are loaded and never
    re-read afterwards; callers receive this object by reference.
    """
    instructions: str
    prompt_order: Tuple[str, ...]
    provider: ProviderSettings
    retrieval: RetrievalSettings
    history_max_turns: Optional[int] = None
    store_full_prompt: bool = True
    display: Dict[str, Any] = field(default_factory=dict)


def resolve_env_vars(value: Any) -> Any:
    """
    Replace ``${VAR}`` string values with the matching environment variable.

    Args:
        value: A config value (string, list or dict, resolved recursively)

    Returns:
        The value with every reference substituted

    Raises:
        ConfigError: If a referenced variable is not set
    """
    if isinstance(value, str):
        match = _ENV_REFERENCE.match(value)
        if not match:
            return value
        env_var = match.group(1)
        resolved = os.getenv(env_var)
        if not resolved:
            raise ConfigError(f"Environment variable {env_var} is not set")
        return resolved

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, dict):
        return {key: resolve_env_vars(item) for key, item in value.items()}

    return value


def _load_instructions(base_dir: Path, relative_path: Optional[str]) -> str:
    if not relative_path:
        logger.warning("No instructions path configured, using empty instructions")
        return ""

    instructions_path = (base_dir / relative_path).resolve()
    if not instructions_path.is_file():
        logger.warning(f"Instructions file not found at {instructions_path}")
        return ""

    instructions = instructions_path.read_text(encoding="utf-8")
    logger.info(f"Loaded instructions from {instructions_path} ({len(instructions)} chars)")
    return instructions


def _parse_prompt_order(raw_order: Optional[list]) -> Tuple[str, ...]:
    if raw_order is None:
        return DEFAULT_PROMPT_ORDER

    order = tuple(raw_order)
    if sorted(order) != sorted(PROMPT_PARTS):
        raise ConfigError(
            f"promptOrder must be a permutation of {list(PROMPT_PARTS)}, got {list(order)}"
        )
    return order


def _parse_provider(llm_section: Dict[str, Any]) -> ProviderSettings:
    name = (llm_section.get("provider") or "").lower()
    if not name:
        raise ConfigError("llm.provider is required")
    if name not in SUPPORTED_PROVIDERS:
        raise ConfigError(
            f"Unsupported LLM provider '{name}'; expected one of: {', '.join(SUPPORTED_PROVIDERS)}"
        )

    raw = llm_section.get(name)
    if raw is None:
        raise ConfigError(f"Provider configuration for '{name}' not found in config")

    # Only the selected provider's section needs its variables set
    raw = resolve_env_vars(raw)

    if "model" not in raw:
        raise ConfigError(f"llm.{name}.model is required")

    return ProviderSettings(
        name=name,
        model=raw["model"],
        timeout=float(raw.get("timeout", 300)),
        max_tokens=int(raw.get("maxTokens", 1024)),
        temperature=float(raw.get("temperature", 0.7)),
        api_key=raw.get("apiKey"),
        host=raw.get("host") or raw.get("baseURL"),
        endpoint=raw.get("endpoint"),
        response_format=raw.get("format", "json"),
        organization=raw.get("organization"),
    )


def load_settings(config_path: str = CONFIG_PATH) -> Settings:
    """
    Load the deployment settings from a JSON config file.

    Paths inside the file are resolved against the directory that contains
    the ``config`` folder, as in the shipped layout.

    Args:
        config_path: Path to config.json

    Returns:
        Frozen Settings object

    Raises:
        ConfigError: If the file is missing or describes an unusable setup
    """
    path = Path(config_path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e

    base_dir = path.parent.parent
    section = raw.get("config", {})
    retrieval_section = raw.get("retrieval", {})

    documents_path = section.get("documentsPath")
    if documents_path:
        documents_path = str((base_dir / documents_path).resolve())

    retrieval = RetrievalSettings(
        documents_path=documents_path,
        max_results=int(retrieval_section.get("maxResults", 3)),
        min_score=float(retrieval_section.get("minScore", 1)),
        timeout=float(retrieval_section.get("timeout", 5)),
        chunk_size=int(retrieval_section.get("chunkSize", 500)),
        chunk_overlap=int(retrieval_section.get("chunkOverlap", 50)),
    )

    history_max_turns = section.get("historyMaxTurns")
    if history_max_turns is not None and int(history_max_turns) <= 0:
        raise ConfigError("historyMaxTurns must be positive or null")

    settings = Settings(
        instructions=_load_instructions(base_dir, section.get("instructions")),
        prompt_order=_parse_prompt_order(section.get("promptOrder")),
        provider=_parse_provider(raw.get("llm", {})),
        retrieval=retrieval,
        history_max_turns=int(history_max_turns) if history_max_turns is not None else None,
        store_full_prompt=bool(section.get("storeFullPrompt", True)),
        display={
            key: value for key, value in section.items()
            if key not in {"promptOrder", "historyMaxTurns", "storeFullPrompt"}
        },
    )

    logger.info(
        f"Loaded settings from {path}: provider={settings.provider.name}, "
        f"model={settings.provider.model}, prompt_order={list(settings.prompt_order)}"
    )
    return settings
