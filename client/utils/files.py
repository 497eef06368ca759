"""
Local file helpers: reading files picked for upload and saving downloads.
"""

import logging
import mimetypes
from pathlib import Path
from typing import Union

from models import FilePayload

logger = logging.getLogger(__name__)

# Types the service expects; mimetypes does not know xlsx on every platform
KNOWN_CONTENT_TYPES = {
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".csv": "text/csv",
    ".pdf": "application/pdf",
}


def guess_content_type(file_name: str) -> str:
    """Best-effort content type for an upload."""
    suffix = Path(file_name).suffix.lower()
    if suffix in KNOWN_CONTENT_TYPES:
        return KNOWN_CONTENT_TYPES[suffix]
    content_type, _ = mimetypes.guess_type(file_name)
    return content_type or "application/octet-stream"


def load_file_payload(path: Union[str, Path]) -> FilePayload:
    """
    Read a file from disk into an upload payload.

    Raises:
        FileNotFoundError: If the path does not exist
    """
    file_path = Path(path)
    content = file_path.read_bytes()
    logger.debug(f"Loaded {file_path.name} ({len(content)} bytes)")
    return FilePayload(
        file_name=file_path.name,
        content=content,
        content_type=guess_content_type(file_path.name),
    )


def save_download(content: bytes, file_name: str, directory: Union[str, Path]) -> Path:
    """
    Write a downloaded payload under ``directory``, replacing any previous copy.

    Returns:
        Path of the written file
    """
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)

    file_path = target_dir / file_name
    with open(file_path, "wb") as f:
        f.write(content)

    logger.info(f"Saved {file_name} ({len(content)} bytes) to {target_dir}")
    return file_path
