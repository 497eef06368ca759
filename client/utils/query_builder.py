"""
Query parameter construction for the student listing endpoint.
"""

from typing import Any, List, Optional, Tuple

from models import QuerySpec
from errors import InvalidQueryError


def build_query_params(spec: QuerySpec) -> List[Tuple[str, Any]]:
    """
    Translate pagination and filter state into ordered query parameters.

    ``page`` and ``size`` are always present. ``studentId`` and ``class`` are
    only sent when the corresponding filter is non-blank after trimming.

    Raises:
        InvalidQueryError: If the page index is negative or the size not positive
    """
    if spec.page_index < 0:
        raise InvalidQueryError("Page index cannot be negative", "pageIndex", spec.page_index)
    if spec.page_size <= 0:
        raise InvalidQueryError("Page size must be positive", "pageSize", spec.page_size)

    params: List[Tuple[str, Any]] = [
        ("page", spec.page_index),
        ("size", spec.page_size),
    ]

    student_id = _non_blank(spec.id_filter)
    if student_id:
        params.append(("studentId", student_id))

    student_class = _non_blank(spec.class_filter)
    if student_class:
        params.append(("class", student_class))

    return params


def _non_blank(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None
