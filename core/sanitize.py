"""
core/sanitize.py -- Two-pass request sanitization pipeline.

Every inbound payload passes through sanitize() before schema validation or
any store call sees it:

  Pass A  strip_query_operators()  -- structured-query injection stripping.
          Object keys that start with "$" are dropped (and reported), and
          string leaves are cleaned according to a per-field rule:
            strict   remove every "$", "{" and "}" (default)
            lenient  remove only "$<operator>" keywords and "$." sequences
            none     leave the string untouched
          An object left with no keys collapses to ABSENT so the validator
          sees a missing field, not an empty structure.

  Pass B  purify_markup()          -- plain-text purification. Strings are
          trimmed and every markup tag is removed (script/style blocks lose
          their content too). No tag is ever allowed through.

Rule resolution for a string leaf, first match wins:
  1. SanitizationRules.field_rules[full path]      e.g. "profile.bio", "tags[1]"
  2. SanitizationRules.field_rules[field name]     lowercase, index suffix removed
  3. password heuristic (when password_fields=True): the name contains
     "password" or "token", or equals "confirmpassword" -> lenient
  4. strict

Rule "none" exempts string leaves only. Containers under a "none" field are
still walked so that no "$"-prefixed key survives at any depth.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger("estategate.sanitize")

Rule = Literal["strict", "lenient", "none"]

SENTINEL = "$"

RESERVED_OPERATORS = (
    "eq",
    "ne",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "nin",
    "exists",
    "type",
    "regex",
    "where",
    "elemMatch",
    "size",
    "all",
    "mod",
    "nor",
    "and",
    "or",
    "not",
)

_OPERATOR_RE = re.compile(r"\$(?:" + "|".join(RESERVED_OPERATORS) + r")\b", re.IGNORECASE)
_SENTINEL_DOT_RE = re.compile(r"\$\.")
_STRICT_RE = re.compile(r"[${}]")
_INDEX_SUFFIX_RE = re.compile(r"(\[\d+\])+$")

_BLOCK_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_UNCLOSED_BLOCK_RE = re.compile(r"<(script|style)\b[^>]*>.*\Z", re.IGNORECASE | re.DOTALL)
_COMMENT_RE = re.compile(r"<!--.*?(-->|\Z)", re.DOTALL)
_TAG_RE = re.compile(r"</?[a-zA-Z!?][^<>]*>")


class _Absent:
    """Marker for a value that sanitization removed entirely."""

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


@dataclass
class SanitizationRules:
    """Per-request sanitization configuration. Never persisted."""

    password_fields: bool = False
    field_rules: dict[str, Rule] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._by_name = {k.lower(): v for k, v in self.field_rules.items()}

    def resolve(self, path: str) -> Rule:
        """Return the rule that applies to the field at path."""
        if path in self.field_rules:
            return self.field_rules[path]
        name = field_name(path)
        if name in self._by_name:
            return self._by_name[name]
        if self.password_fields and _is_password_like(name):
            return "lenient"
        return "strict"


# Login, registration, and reset payloads carry passwords and tokens that must
# keep their "$" characters intact.
CREDENTIAL_RULES = SanitizationRules(password_fields=True)
DEFAULT_RULES = SanitizationRules()


@dataclass
class SanitizeResult:
    value: Any
    blocked_keys: list[str] = field(default_factory=list)


def field_name(path: str) -> str:
    """Return the lowercase last segment of a dotted path without index suffixes."""
    last = path.rsplit(".", 1)[-1]
    return _INDEX_SUFFIX_RE.sub("", last).lower()


def _is_password_like(name: str) -> bool:
    return "password" in name or "token" in name or name == "confirmpassword"


def _child_path(parent: str, key: str) -> str:
    return f"{parent}.{key}" if parent else key


# ---------------------------------------------------------------------------
# Pass A -- structured-query injection stripping
# ---------------------------------------------------------------------------


def clean_string(value: str, rule: Rule) -> str:
    if rule == "none":
        return value
    if rule == "lenient":
        return _SENTINEL_DOT_RE.sub("", _OPERATOR_RE.sub("", value))
    return _STRICT_RE.sub("", value)


def strip_query_operators(
    value: Any,
    path: str = "",
    rules: SanitizationRules = DEFAULT_RULES,
    blocked: list[str] | None = None,
) -> Any:
    """Depth-first Pass A over an arbitrary JSON-like value.

    Returns the cleaned value, or ABSENT when an object lost all of its keys.
    Dropped "$" keys are appended (as full paths) to blocked when given.
    """
    if isinstance(value, str):
        return clean_string(value, rules.resolve(path))

    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for key, child in value.items():
            key = str(key)
            child_path = _child_path(path, key)
            if key.startswith(SENTINEL):
                logger.warning('Blocked potential query injection: key "%s"', child_path)
                if blocked is not None:
                    blocked.append(child_path)
                continue
            result = strip_query_operators(child, child_path, rules, blocked)
            if result is ABSENT:
                continue
            cleaned[key] = result
        return cleaned if cleaned else ABSENT

    if isinstance(value, (list, tuple)):
        items = []
        for index, item in enumerate(value):
            result = strip_query_operators(item, f"{path}[{index}]", rules, blocked)
            items.append(None if result is ABSENT else result)
        return items

    return value


# ---------------------------------------------------------------------------
# Pass B -- markup purification
# ---------------------------------------------------------------------------


def strip_markup(text: str) -> str:
    """Trim text and remove every markup tag, comment, and script/style block."""
    text = text.strip()
    text = _BLOCK_RE.sub("", text)
    text = _UNCLOSED_BLOCK_RE.sub("", text)
    text = _COMMENT_RE.sub("", text)
    # Nested fragments like "<<b>script>" reassemble into a tag after one pass.
    previous = None
    while previous != text:
        previous = text
        text = _TAG_RE.sub("", text)
    return text.strip()


def purify_markup(value: Any) -> Any:
    if isinstance(value, str):
        return strip_markup(value)
    if isinstance(value, dict):
        return {key: purify_markup(child) for key, child in value.items()}
    if isinstance(value, (list, tuple)):
        return [purify_markup(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def sanitize(value: Any, rules: SanitizationRules = DEFAULT_RULES) -> SanitizeResult:
    """Run Pass A then Pass B. A fully collapsed input yields value=ABSENT."""
    blocked: list[str] = []
    stripped = strip_query_operators(value, "", rules, blocked)
    if stripped is ABSENT:
        return SanitizeResult(value=ABSENT, blocked_keys=blocked)
    return SanitizeResult(value=purify_markup(stripped), blocked_keys=blocked)
