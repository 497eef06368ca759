"""
Utility modules for the pipeline client.
"""

from .query_builder import build_query_params

from .files import (
    guess_content_type,
    load_file_payload,
    save_download,
)

__all__ = [
    # Query parameters
    "build_query_params",
    # Files
    "guess_content_type",
    "load_file_payload",
    "save_download",
]
