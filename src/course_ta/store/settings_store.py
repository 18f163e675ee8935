"""
Settings Store Module - Persisted runtime settings.
===================================================

Small JSON key-value store for values operators change at runtime
(active models, active File Search store). Read by ConfigProvider.
"""

from pathlib import Path
from typing import Optional

from course_ta.shared.logging import get_logger
from course_ta.shared.utils import load_json, save_json

logger = get_logger(__name__)


class JsonSettingsStore:
    """
    Key-value settings persisted to a JSON object file.

    Example:
        >>> store = JsonSettingsStore(Path("data/settings.json"))
        >>> store.set_setting("gemini_retrieval_model", "models/gemini-2.5-pro")
        >>> store.get_setting("gemini_retrieval_model")
        'models/gemini-2.5-pro'
    """

    def __init__(self, file_path: Path):
        self.file_path = Path(file_path)

    def _read(self) -> dict[str, str]:
        data = load_json(self.file_path, default={})
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed settings file: {self.file_path}")
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def get_setting(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return value if value else None

    def set_setting(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        save_json(self.file_path, data)
        logger.info(f"Setting updated: {key}")

    def unset_setting(self, key: str) -> bool:
        """Remove a setting. Returns True if it existed."""
        data = self._read()
        if key not in data:
            return False
        del data[key]
        save_json(self.file_path, data)
        logger.info(f"Setting removed: {key}")
        return True

    def all_settings(self) -> dict[str, str]:
        return self._read()
