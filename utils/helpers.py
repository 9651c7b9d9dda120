"""
Helper Utility Module

This module provides various helper functions used throughout the Issue Mapper.
"""

import re
import time
from typing import Any, Callable, Dict, Optional, Tuple


def retry(func: Callable, max_attempts: int = 3, delay: float = 2,
          exceptions: Tuple = (Exception,), backoff: float = 2):
    """
    Retry a function multiple times if it fails.

    Args:
        func: The function to retry
        max_attempts: Maximum number of attempts
        delay: Initial delay between attempts in seconds
        exceptions: Tuple of exceptions to catch
        backoff: Multiplier for the delay between attempts

    Returns:
        The result of the function call

    Raises:
        The last exception raised by the function
    """
    attempt = 0
    while attempt < max_attempts:
        try:
            return func()
        except exceptions:
            attempt += 1
            if attempt == max_attempts:
                raise

            wait_time = delay * (backoff ** (attempt - 1))
            time.sleep(wait_time)


def truncate_text(text: Optional[str], max_length: int = 100, add_ellipsis: bool = True) -> Optional[str]:
    """
    Truncate text to a maximum length.

    Args:
        text: The text to truncate
        max_length: Maximum length
        add_ellipsis: Whether to add an ellipsis if text is truncated

    Returns:
        str: Truncated text
    """
    if not text or len(text) <= max_length:
        return text

    truncated = text[:max_length].rstrip()
    if add_ellipsis:
        truncated += "..."

    return truncated


def normalize_whitespace(text: str) -> str:
    """Collapse runs of whitespace (including newlines) into single spaces."""
    return re.sub(r'\s+', ' ', text).strip()


def safe_get(data: Dict[str, Any], *keys, default: Any = None) -> Any:
    """
    Safely get a value from a nested dictionary.

    Args:
        data: The dictionary to search
        *keys: The keys to follow
        default: Default value if key doesn't exist

    Returns:
        The value at the specified keys or the default value
    """
    for key in keys:
        try:
            data = data[key]
        except (KeyError, TypeError, IndexError):
            return default
    return data
