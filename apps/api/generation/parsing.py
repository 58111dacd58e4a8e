"""Lenient JSON parsing for model output.

Model replies are expected to hold one JSON object but routinely arrive
wrapped in markdown fences, with trailing commas, bare keys, single quotes,
raw control characters or bare words inside arrays. ``ResilientTextParser``
tries an ordered list of repair strategies and stops at the first one whose
result validates; when none does it returns the caller's placeholder, so
``parse`` never raises.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LEADING_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*[ \t]*\r?\n?")
_TRAILING_FENCE_RE = re.compile(r"\r?\n?```\s*$")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_LINE_CONTROL_RE = re.compile(r"[\t\r\n]")
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?$")
_LITERALS = {"true", "false", "null"}
_EXCERPT_CHARS = 500


class RepairLevel(str, Enum):
    NONE = "none"
    BASIC = "basic"
    AGGRESSIVE = "aggressive"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ParseOutcome(Generic[T]):
    value: T
    repair_level: RepairLevel
    error: Optional[str] = None

    @property
    def fell_back(self) -> bool:
        return self.repair_level == RepairLevel.FALLBACK


@dataclass(frozen=True)
class StrategyResult:
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# --- Text transforms ---------------------------------------------------------


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json fence and a trailing ``` fence."""
    stripped = _LEADING_FENCE_RE.sub("", text, count=1)
    stripped = _TRAILING_FENCE_RE.sub("", stripped, count=1)
    return stripped.strip()


def strip_control_characters(text: str) -> str:
    """Drop control characters; line breaks and tabs become plain spaces."""
    return _CONTROL_CHARS_RE.sub("", _LINE_CONTROL_RE.sub(" ", text))


def remove_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def convert_single_quotes(text: str) -> str:
    """Rewrite single-quoted string literals as double-quoted ones.

    Apostrophes inside double-quoted strings are left alone.
    """
    output: List[str] = []
    in_double = False
    escape = False
    index = 0

    while index < len(text):
        char = text[index]

        if in_double:
            output.append(char)
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_double = False
            index += 1
            continue

        if char == '"':
            in_double = True
            output.append(char)
            index += 1
            continue

        if char != "'":
            output.append(char)
            index += 1
            continue

        # Collect the single-quoted literal up to its closing quote.
        start = index
        index += 1
        literal: List[str] = []
        closed = False
        while index < len(text):
            current = text[index]
            if current == "\\" and index + 1 < len(text):
                following = text[index + 1]
                literal.append("'" if following == "'" else current + following)
                index += 2
                continue
            if current == "'":
                closed = True
                index += 1
                break
            literal.append('\\"' if current == '"' else current)
            index += 1

        if not closed:
            output.append(text[start:])
            continue
        output.append('"' + "".join(literal) + '"')

    return "".join(output)


def quote_bare_keys(text: str) -> str:
    """Wrap bare object keys in double quotes (JS-style object literals)."""
    output: List[str] = []
    in_string = False
    escape = False
    expecting_key = False
    index = 0

    while index < len(text):
        char = text[index]

        if in_string:
            output.append(char)
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            index += 1
            continue

        if char == '"':
            output.append(char)
            in_string = True
            index += 1
            continue

        if char in "{,":
            output.append(char)
            expecting_key = True
            index += 1
            continue

        if char in "}:[]":
            output.append(char)
            expecting_key = False
            index += 1
            continue

        if expecting_key and (char.isalpha() or char in "_$"):
            start = index
            index += 1
            while index < len(text) and (text[index].isalnum() or text[index] in "_$-"):
                index += 1
            key = text[start:index]

            lookahead = index
            while lookahead < len(text) and text[lookahead].isspace():
                lookahead += 1

            if lookahead < len(text) and text[lookahead] == ":":
                output.append(f'"{key}"')
                output.append(text[index:lookahead])
                index = lookahead
            else:
                output.append(key)
            expecting_key = False
            continue

        if not char.isspace():
            expecting_key = False
        output.append(char)
        index += 1

    return "".join(output)


def truncate_to_object(text: str) -> str:
    """Keep only the span between the first ``{`` and the last ``}``."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return text
    return text[start : end + 1]


def _split_array_items(content: str) -> List[str]:
    items: List[str] = []
    current: List[str] = []
    in_string = False
    escape = False

    for char in content:
        if in_string:
            current.append(char)
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            current.append(char)
            continue
        if char == ",":
            items.append("".join(current))
            current = []
            continue
        current.append(char)

    items.append("".join(current))
    return items


def _normalize_array_item(item: str) -> Optional[str]:
    token = item.strip()
    if not token:
        return None
    if len(token) >= 2 and token.startswith('"') and token.endswith('"'):
        return token
    if _NUMBER_RE.match(token) or token in _LITERALS:
        return token
    return json.dumps(token.strip('"'), ensure_ascii=False)


def normalize_array_tokens(text: str) -> str:
    """Quote bare string tokens inside flat arrays.

    Only arrays without nested arrays/objects are rewritten; numbers,
    ``true``/``false``/``null`` and already-quoted strings are kept as-is.
    """
    spans: List[Tuple[int, int]] = []
    stack: List[List[Any]] = []
    in_string = False
    escape = False

    for index, char in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
            continue

        if char in "[{":
            if stack:
                stack[-1][2] = False
            stack.append([char, index, char == "["])
            continue

        if char in "]}" and stack:
            opener, start, flat = stack.pop()
            if char == "]" and opener == "[" and flat:
                spans.append((start, index))

    if not spans:
        return text

    output: List[str] = []
    cursor = 0
    for start, end in sorted(spans):
        output.append(text[cursor:start])
        items = [_normalize_array_item(item) for item in _split_array_items(text[start + 1 : end])]
        output.append("[" + ", ".join(item for item in items if item is not None) + "]")
        cursor = end + 1
    output.append(text[cursor:])
    return "".join(output)


def apply_basic_repairs(text: str) -> str:
    repaired = strip_control_characters(strip_code_fences(text))
    repaired = convert_single_quotes(repaired)
    repaired = quote_bare_keys(repaired)
    return remove_trailing_commas(repaired)


def apply_aggressive_repairs(text: str) -> str:
    repaired = truncate_to_object(strip_code_fences(text))
    repaired = apply_basic_repairs(repaired)
    return normalize_array_tokens(repaired)


# --- Strategies --------------------------------------------------------------


def _loads(candidate: str) -> StrategyResult:
    try:
        return StrategyResult(value=json.loads(candidate))
    except (ValueError, RecursionError) as exc:
        return StrategyResult(error=str(exc) or exc.__class__.__name__)


def parse_direct(text: str) -> StrategyResult:
    return _loads(strip_code_fences(text))


def parse_with_basic_repairs(text: str) -> StrategyResult:
    return _loads(apply_basic_repairs(text))


def parse_with_aggressive_repairs(text: str) -> StrategyResult:
    return _loads(apply_aggressive_repairs(text))


Strategy = Callable[[str], StrategyResult]

DEFAULT_STRATEGIES: Sequence[Tuple[RepairLevel, Strategy]] = (
    (RepairLevel.NONE, parse_direct),
    (RepairLevel.BASIC, parse_with_basic_repairs),
    (RepairLevel.AGGRESSIVE, parse_with_aggressive_repairs),
)


class ResilientTextParser(Generic[T]):
    """Turn a raw model reply into a typed value, never raising.

    ``schema`` (a pydantic model) and ``accept`` both gate a strategy's
    result: a value that parses but does not validate moves on to the next
    strategy. ``fallback`` receives a human-readable error message and must
    return a structurally valid placeholder.
    """

    def __init__(
        self,
        fallback: Callable[[str], T],
        *,
        schema: Optional[Type[BaseModel]] = None,
        accept: Optional[Callable[[Any], bool]] = None,
        strategies: Sequence[Tuple[RepairLevel, Strategy]] = DEFAULT_STRATEGIES,
    ) -> None:
        self.fallback = fallback
        self.schema = schema
        self.accept = accept
        self.strategies = tuple(strategies)

    def _coerce(self, raw: Any) -> Tuple[Any, Optional[str]]:
        value = raw
        if self.schema is not None:
            try:
                value = self.schema.model_validate(raw)
            except ValidationError as exc:
                return None, f"schema mismatch ({exc.error_count()} error(s))"
        if self.accept is not None and not self.accept(value):
            return None, "value rejected by validator"
        return value, None

    def parse(self, text: Any, context: str = "payload") -> ParseOutcome[T]:
        if not isinstance(text, str) or not text.strip():
            message = f"Empty or non-text response received for {context}"
            logger.warning("Parse fallback for %s: %s", context, message)
            return ParseOutcome(value=self.fallback(message), repair_level=RepairLevel.FALLBACK, error=message)

        errors: List[str] = []
        for level, strategy in self.strategies:
            result = strategy(text)
            if not result.ok:
                errors.append(f"{level.value}: {result.error}")
                continue
            value, error = self._coerce(result.value)
            if error:
                errors.append(f"{level.value}: {error}")
                continue
            if level != RepairLevel.NONE:
                logger.info("Parsed %s after %s repair", context, level.value)
            return ParseOutcome(value=value, repair_level=level)

        message = f"Could not parse {context} after all repair attempts"
        logger.warning(
            "Parse fallback for %s (%s). Raw text (first %s chars): %s",
            context,
            "; ".join(errors),
            _EXCERPT_CHARS,
            text[:_EXCERPT_CHARS],
        )
        return ParseOutcome(value=self.fallback(message), repair_level=RepairLevel.FALLBACK, error=message)
