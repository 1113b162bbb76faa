"""File name sanitising for stored records"""

import re

from blobkeeper.utils.logger import get_logger

logger = get_logger(__name__)

UNSAFE_CHARACTERS = re.compile(r"[^a-zA-Z0-9._-]")
MAX_FILE_NAME_LENGTH = 255


def get_safe_filename(filename: str) -> str:
    """
    Get a safe version of filename

    Path components are dropped and every character outside
    letters, digits, dot, underscore and dash is replaced with an underscore.

    Args:
        filename: Original filename

    Returns:
        Safe filename (never empty)
    """
    # Keep only the last path component for either separator
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe_name = UNSAFE_CHARACTERS.sub("_", base)

    # Remove leading dots so the name can never be hidden or relative
    safe_name = safe_name.lstrip(".")

    if len(safe_name) > MAX_FILE_NAME_LENGTH:
        safe_name = safe_name[-MAX_FILE_NAME_LENGTH:]

    if not safe_name:
        safe_name = "file"

    if safe_name != filename:
        logger.debug(f"Sanitized file name {filename!r} -> {safe_name!r}")

    return safe_name
