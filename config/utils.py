"""Helper utilities for reading configuration sections regardless of the backing object."""
from __future__ import annotations

from typing import Any, Dict


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from Config, SectionProxy, or dict objects."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = source.get(section, {})
        return _as_dict(candidate)

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        return _as_dict(candidate)

    return {}


def _as_dict(candidate: Any) -> Dict:
    if isinstance(candidate, dict):
        return candidate
    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        value = to_dict()
        if isinstance(value, dict):
            return value
    return {}
