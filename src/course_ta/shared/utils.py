"""
Utilities Module - Common helper functions.
==========================================

Provides utility functions for:
- Hashing (SHA256 for session anonymization)
- File I/O (JSON, JSONL)
- Directory management
- Text helpers shared by the answer pipeline
"""

import hashlib
import json
from pathlib import Path
from typing import Any, Iterator

from course_ta.shared.logging import get_logger

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Hashing Functions
# ─────────────────────────────────────────────────────────────────────────────


def compute_hash(text: str, algorithm: str = "sha256") -> str:
    """
    Compute hash of text content.

    Args:
        text: Text to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Hexadecimal hash string

    Example:
        >>> compute_hash("hello world")
        'b94d27b9934d3e08a52e52d7da7dabfac484efe37a5380ee9088f7ace2efcde9'
    """
    hasher = hashlib.new(algorithm)
    hasher.update(text.encode("utf-8"))
    return hasher.hexdigest()


def anonymize_id(value: str, salt: str, length: int = 16) -> str:
    """
    Salted, truncated SHA-256 of an identifier.

    Args:
        value: Identifier to anonymize (e.g. a session id)
        salt: Deployment-specific salt
        length: Number of hex characters to keep

    Returns:
        Stable pseudonymous identifier, empty when ``value`` is empty
    """
    if not value:
        return ""
    return compute_hash(f"{salt}:{value}")[:length]


# ─────────────────────────────────────────────────────────────────────────────
# Directory Management
# ─────────────────────────────────────────────────────────────────────────────


def ensure_parent_directory(file_path: Path) -> Path:
    """
    Ensure the parent directory of a file exists.

    Args:
        file_path: File path

    Returns:
        The file path (for chaining)
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    return file_path


# ─────────────────────────────────────────────────────────────────────────────
# JSON File I/O
# ─────────────────────────────────────────────────────────────────────────────


def load_json(file_path: Path, default: Any = None) -> Any:
    """
    Load data from a JSON file.

    Args:
        file_path: Path to JSON file
        default: Value returned when the file does not exist

    Returns:
        Parsed JSON data

    Raises:
        json.JSONDecodeError: If file is not valid JSON
    """
    file_path = Path(file_path)
    if not file_path.exists():
        return default

    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


def save_json(file_path: Path, data: Any, indent: int = 2) -> None:
    """
    Save data to a JSON file.

    Args:
        file_path: Path to JSON file
        data: Data to save (must be JSON serializable)
        indent: Indentation level (default: 2)
    """
    file_path = Path(file_path)
    ensure_parent_directory(file_path)

    with open(file_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False, default=str)

    logger.debug(f"Saved JSON to {file_path}")


# ─────────────────────────────────────────────────────────────────────────────
# JSONL File I/O
# ─────────────────────────────────────────────────────────────────────────────


def load_jsonl(file_path: Path) -> Iterator[dict[str, Any]]:
    """
    Load data from a JSONL (JSON Lines) file.

    Yields one record at a time for memory efficiency.

    Args:
        file_path: Path to JSONL file

    Yields:
        Parsed JSON objects
    """
    file_path = Path(file_path)

    with open(file_path, "r", encoding="utf-8") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON at line {line_num} in {file_path}: {e}")
                continue


def append_jsonl(file_path: Path, item: dict[str, Any]) -> None:
    """
    Append a single item to a JSONL file.

    Args:
        file_path: Path to JSONL file
        item: Dictionary to append
    """
    file_path = Path(file_path)
    ensure_parent_directory(file_path)

    with open(file_path, "a", encoding="utf-8") as f:
        line = json.dumps(item, ensure_ascii=False, default=str)
        f.write(line + "\n")


# ─────────────────────────────────────────────────────────────────────────────
# Text Helpers
# ─────────────────────────────────────────────────────────────────────────────


def truncate(text: str, max_chars: int, ellipsis: str = "…") -> str:
    """
    Truncate text to ``max_chars`` characters, appending an ellipsis when cut.

    Example:
        >>> truncate("abcdef", 3)
        'abc…'
    """
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + ellipsis


def mask_secret(value: str, visible: int = 4) -> str:
    """Mask all but the last few characters of a credential."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
