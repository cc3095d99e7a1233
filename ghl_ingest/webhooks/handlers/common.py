"""
Shared helpers for type handlers.
"""
from typing import Any, Mapping, Optional

from ghl_ingest.utils.timestamps import parse_timestamp


def apply_fields(row: Any, source: Mapping, field_map: Mapping[str, str], partial: bool = True) -> list[str]:
    """
    Copy payload keys onto model attributes.
    partial=True only touches keys present in the payload; partial=False resets absent ones to None.
    Returns the attribute names written.
    """
    written = []
    for key, attr in field_map.items():
        if key in source:
            setattr(row, attr, source[key])
            written.append(attr)
        elif not partial:
            setattr(row, attr, None)
            written.append(attr)
    return written


def apply_timestamps(row: Any, source: Mapping, field_map: Mapping[str, str]) -> None:
    for key, attr in field_map.items():
        if key in source:
            setattr(row, attr, parse_timestamp(source[key]))


def full_name(first: Optional[str], last: Optional[str]) -> Optional[str]:
    name = f"{first or ''} {last or ''}".strip()
    return name or None


def missing(*values: Any) -> bool:
    return any(v is None or v == "" for v in values)
