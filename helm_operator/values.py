"""Semantic comparison of chart values.

Values are compared as parsed YAML documents rather than as text, so that
key order, indentation and quoting do not cause spurious upgrades. Scalars
must match in type as well as value: `3` and `3.0` are different values, as
are `true` and `1`.
"""

import logging
from typing import Any

import yaml

from .exceptions import InputException

__all__ = [
    "parse_values",
    "values_equal",
    "dump_values",
]

_LOGGER = logging.getLogger(__name__)


def parse_values(content: str | dict[str, Any] | None) -> dict[str, Any]:
    """Parse a values document, treating empty content as no values."""
    if isinstance(content, dict):
        return content
    if content is None or not content.strip():
        return {}
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse values: {err}") from err
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise InputException(
            f"Values must be a mapping, got {type(doc).__name__}: {content!r}"
        )
    return doc


def dump_values(values: dict[str, Any]) -> str:
    """Serialize values to YAML text."""
    if not values:
        return ""
    return yaml.dump(values, sort_keys=False, explicit_start=False)


def _equal(left: Any, right: Any) -> bool:
    if type(left) is not type(right):
        return False
    if isinstance(left, dict):
        if left.keys() != right.keys():
            return False
        return all(_equal(left[key], right[key]) for key in left)
    if isinstance(left, list):
        if len(left) != len(right):
            return False
        return all(_equal(a, b) for a, b in zip(left, right))
    return bool(left == right)


def values_equal(
    left: str | dict[str, Any] | None, right: str | dict[str, Any] | None
) -> bool:
    """Return true if both documents describe the same values.

    A document that cannot be parsed is never equal to anything.
    """
    try:
        left_values = parse_values(left)
        right_values = parse_values(right)
    except InputException as err:
        _LOGGER.debug("Treating values as changed: %s", err)
        return False
    return _equal(left_values, right_values)
