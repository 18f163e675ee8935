"""
Runtime Module - Per-request resolution of model and store identifiers.
======================================================================

Values that operators can change at runtime (active model, active File
Search store) are resolved once per request, per key, in this order:

1. Explicit override passed by the caller
2. Persisted setting from the settings store
3. Environment / YAML default from Settings
4. Built-in default
"""

from typing import Optional, Protocol

from pydantic import BaseModel

from course_ta.shared.config import DEFAULT_MODEL, Settings, get_settings
from course_ta.shared.errors import ConfigurationError

STORE_PREFIX = "fileSearchStores/"

# Persisted setting keys
SETTING_MODEL = "gemini_model"
SETTING_RETRIEVAL_MODEL = "gemini_retrieval_model"
SETTING_GREETING_MODEL = "gemini_greeting_model"
SETTING_STORE_NAME = "file_search_store_name"

KNOWN_SETTINGS = (
    SETTING_MODEL,
    SETTING_RETRIEVAL_MODEL,
    SETTING_GREETING_MODEL,
    SETTING_STORE_NAME,
)


class SettingsSource(Protocol):
    """Anything that can return a persisted setting by key."""

    def get_setting(self, key: str) -> Optional[str]: ...


class RuntimeConfig(BaseModel):
    """Identifiers resolved for one request."""

    api_key: str = ""
    store_name: str = ""
    retrieval_model: str = DEFAULT_MODEL
    greeting_model: str = DEFAULT_MODEL

    model_config = {"frozen": True}

    def require_credentials(self) -> None:
        """
        Raise ConfigurationError when the API key or store is missing.

        Raises:
            ConfigurationError: With a message naming the missing variable
        """
        if not self.api_key:
            raise ConfigurationError("Missing GEMINI_API_KEY")
        if not self.store_name:
            raise ConfigurationError("Missing FILE_SEARCH_STORE_NAME")


def normalize_store_name(name: Optional[str]) -> str:
    """
    Normalize a File Search store identifier.

    Example:
        >>> normalize_store_name("abc123")
        'fileSearchStores/abc123'
        >>> normalize_store_name("fileSearchStores/abc123")
        'fileSearchStores/abc123'
    """
    name = (name or "").strip()
    if not name:
        return ""
    if "/" in name:
        return name
    return f"{STORE_PREFIX}{name}"


def _first(*values: Optional[str]) -> str:
    for value in values:
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


class ConfigProvider:
    """
    Resolve RuntimeConfig from overrides, persisted settings and environment.

    Example:
        >>> provider = ConfigProvider(settings_store)
        >>> runtime = provider.resolve()
        >>> runtime.retrieval_model
        'models/gemini-2.5-flash'
    """

    def __init__(
        self,
        store: Optional[SettingsSource] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()

    def _persisted(self, key: str) -> Optional[str]:
        if self.store is None:
            return None
        return self.store.get_setting(key)

    def resolve(
        self,
        retrieval_model: Optional[str] = None,
        greeting_model: Optional[str] = None,
        store_name: Optional[str] = None,
    ) -> RuntimeConfig:
        """
        Resolve runtime identifiers for one request.

        Args:
            retrieval_model: Explicit retrieval model override
            greeting_model: Explicit greeting model override
            store_name: Explicit File Search store override

        Returns:
            RuntimeConfig (credentials are not validated here)
        """
        s = self.settings

        resolved_retrieval = _first(
            retrieval_model,
            self._persisted(SETTING_RETRIEVAL_MODEL),
            s.gemini_retrieval_model,
            s.generation.retrieval_model,
            DEFAULT_MODEL,
        )
        resolved_greeting = _first(
            greeting_model,
            self._persisted(SETTING_GREETING_MODEL),
            s.gemini_greeting_model,
            self._persisted(SETTING_MODEL),
            s.gemini_model,
            s.generation.greeting_model,
            DEFAULT_MODEL,
        )
        resolved_store = _first(
            store_name,
            self._persisted(SETTING_STORE_NAME),
            s.file_search_store_name,
        )

        return RuntimeConfig(
            api_key=s.gemini_api_key,
            store_name=normalize_store_name(resolved_store),
            retrieval_model=resolved_retrieval,
            greeting_model=resolved_greeting,
        )
