"""
Configuration Module - Load and validate application settings.
==============================================================

Loads configuration from:
1. config/settings.yaml (defaults)
2. Environment variables from .env file
3. Environment variables from system

Environment variables override YAML defaults.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

# Load .env file early
load_dotenv()


# Find project root (where pyproject.toml is located)
def _find_project_root() -> Path:
    """Find the project root directory by looking for pyproject.toml."""
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists():
            return parent
    # Fallback to current working directory
    return Path.cwd()


PROJECT_ROOT = _find_project_root()
CONFIG_DIR = PROJECT_ROOT / "config"
DEFAULT_CONFIG_FILE = CONFIG_DIR / "settings.yaml"

DEFAULT_MODEL = "models/gemini-2.5-flash"


# ─────────────────────────────────────────────────────────────────────────────
# Nested Configuration Models
# ─────────────────────────────────────────────────────────────────────────────


class CourseConfig(BaseModel):
    """Course identity used by the persona prompt."""

    name: str = "מבוא לאתיקה למשאבי אנוש"
    institution: str = "המכללה האקדמית כנרת"
    audience: str = "סטודנטים לתואר ראשון בניהול משאבי אנוש"


class GenerationConfig(BaseModel):
    """LLM generation settings."""

    api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    retrieval_model: str = DEFAULT_MODEL
    greeting_model: str = DEFAULT_MODEL
    fallback_model: str = DEFAULT_MODEL
    temperature: float = 0.3
    greeting_temperature: float = 0.75
    max_output_tokens: int = 1500
    greeting_max_output_tokens: int = 360
    fallback_min_output_tokens: int = 2200
    disable_thinking: bool = True
    connect_timeout: float = 10.0


class RetrievalConfig(BaseModel):
    """File Search breadth per orchestration stage."""

    unfiltered_top_k: int = 10
    scoped_unfiltered_top_k: int = 14
    filtered_top_k: int = 8
    scoped_filtered_top_k: int = 10
    rescue_top_k_floor: int = 20


class GroundingConfig(BaseModel):
    """Grounding thresholds. Tuned values, kept overridable."""

    strong_coverage: float = 0.08
    strong_supports: int = 2
    selection_margin: float = 0.05
    term_coverage_threshold: float = 0.8
    min_term_token_length: int = 2
    quote_max_chars: int = 180


class ContextConfig(BaseModel):
    """Conversation context settings."""

    recent_turns_limit: int = 12
    prompt_user_turns: int = 6
    short_question_max_tokens: int = 12


class StreamingConfig(BaseModel):
    """Presentation streaming of a finished answer."""

    chunk_size: int = 60
    chunk_delay_seconds: float = 0.012


class PathsConfig(BaseModel):
    """Data paths configuration."""

    data_dir: str = "data"
    settings_file: str = "data/settings.json"
    conversations_file: str = "data/conversations.json"
    analytics_file: str = "data/analytics.jsonl"

    def resolve(self, base_path: Path) -> "ResolvedPaths":
        """Resolve paths relative to a base path."""
        return ResolvedPaths(
            data_dir=base_path / self.data_dir,
            settings_file=base_path / self.settings_file,
            conversations_file=base_path / self.conversations_file,
            analytics_file=base_path / self.analytics_file,
        )


class ResolvedPaths(BaseModel):
    """Resolved absolute paths."""

    data_dir: Path
    settings_file: Path
    conversations_file: Path
    analytics_file: Path

    model_config = {"arbitrary_types_allowed": True}


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    rich_console: bool = True
    file: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# Main Settings Class
# ─────────────────────────────────────────────────────────────────────────────


class Settings(BaseSettings):
    """
    Main application settings.

    Loads from:
    1. config/settings.yaml (defaults)
    2. Environment variables

    Environment variables override YAML settings, including nested values
    such as GROUNDING__STRONG_COVERAGE.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Rank the environment above init kwargs, which carry the YAML defaults."""
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # Credentials and store (from environment only)
    gemini_api_key: str = Field(default="", validation_alias="GEMINI_API_KEY")
    file_search_store_name: str = Field(default="", validation_alias="FILE_SEARCH_STORE_NAME")

    # Top-level environment overrides
    gemini_model: Optional[str] = Field(default=None, validation_alias="GEMINI_MODEL")
    gemini_retrieval_model: Optional[str] = Field(
        default=None, validation_alias="GEMINI_RETRIEVAL_MODEL"
    )
    gemini_greeting_model: Optional[str] = Field(
        default=None, validation_alias="GEMINI_GREETING_MODEL"
    )
    log_level: Optional[str] = Field(default=None, validation_alias="LOG_LEVEL")
    analytics_salt: str = Field(default="analytics-v1", validation_alias="ANALYTICS_SALT")

    # Nested configurations (from YAML)
    course: CourseConfig = Field(default_factory=CourseConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    grounding: GroundingConfig = Field(default_factory=GroundingConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Computed properties
    _project_root: Path = PROJECT_ROOT
    _resolved_paths: Optional[ResolvedPaths] = None

    @field_validator("gemini_api_key", "file_search_store_name", mode="before")
    @classmethod
    def validate_secret(cls, v: Any) -> str:
        """Allow empty credentials; the generation client reports them when used."""
        if v is None:
            return ""
        return str(v).strip()

    @property
    def project_root(self) -> Path:
        """Get the project root directory."""
        return self._project_root

    @property
    def resolved_paths(self) -> ResolvedPaths:
        """Get resolved absolute paths."""
        if self._resolved_paths is None:
            self._resolved_paths = self.paths.resolve(self._project_root)
        return self._resolved_paths

    def get_effective_log_level(self) -> str:
        """Get the effective log level (env override or config)."""
        if self.log_level:
            return self.log_level.upper()
        return self.logging.level.upper()


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        return data if data else {}


def _create_settings(config_path: Optional[Path] = None) -> Settings:
    """Create settings instance by merging YAML defaults with environment."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    yaml_config = _load_yaml_config(config_path)

    # YAML arrives as init kwargs, ranked below the environment
    return Settings(**yaml_config)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get the singleton settings instance.

    Returns:
        Settings instance with merged configuration

    Example:
        >>> settings = get_settings()
        >>> print(settings.retrieval.rescue_top_k_floor)
        20
    """
    return _create_settings()


def reload_settings() -> Settings:
    """
    Force reload of settings (clears cache).

    Returns:
        Fresh Settings instance
    """
    get_settings.cache_clear()
    return get_settings()
