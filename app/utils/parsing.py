"""
Tolerant parsing of free-form assistant output.

The assistant is asked for JSON or source code but answers in prose often
enough that every caller goes through these helpers.  Results are tagged so
the raw text is still available for logging when nothing could be parsed.

Public API
----------
parse_json(text)  -> Parsed | Unparseable
extract_code(text) -> str   ("" when no code-like content is present)
"""
from __future__ import annotations

import dataclasses
import json
import logging
import re
from typing import Any, List, Tuple, Union

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tagged result
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class Parsed:
    value: Any


@dataclasses.dataclass(frozen=True)
class Unparseable:
    raw_text: str


ParseResult = Union[Parsed, Unparseable]

_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_+-]*)[ \t]*\n(.*?)```", re.DOTALL)


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

def parse_json(text: str) -> ParseResult:
    """
    Try multiple strategies to parse JSON from potentially messy output.

    Order: strict parse, fenced block, common-mangling repair, first
    balanced ``[...]`` / ``{...}`` structure, outermost braces, and finally
    closing a truncated array or object.
    """
    if not text or not text.strip():
        return Unparseable(text or "")

    stripped = text.strip()

    # Strategy 1: direct parse
    ok, val = _try_json(stripped)
    if ok:
        return Parsed(val)

    # Strategy 2: fenced blocks anywhere in the text
    for _lang, body in _fenced_blocks(stripped):
        ok, val = _try_json(body.strip())
        if not ok:
            ok, val = _try_json(fix_json_issues(body))
        if ok:
            return Parsed(val)

    # Strategy 3: fix common JSON mangling
    fixed = fix_json_issues(stripped)
    ok, val = _try_json(fixed)
    if ok:
        return Parsed(val)

    # Strategy 4: first balanced structure inside surrounding prose
    for open_b, close_b in (("[", "]"), ("{", "}")):
        fragment = extract_json_structure(stripped, open_b, close_b)
        if fragment:
            ok, val = _try_json(fragment)
            if not ok:
                ok, val = _try_json(fix_json_issues(fragment))
            if ok:
                return Parsed(val)

    # Strategy 5: outermost braces
    start, end = stripped.find("{"), stripped.rfind("}")
    if 0 <= start < end:
        ok, val = _try_json(fix_json_issues(stripped[start:end + 1]))
        if ok:
            return Parsed(val)

    # Strategy 6: close a truncated array / object
    for suffix in ("]", "}", "}]"):
        ok, val = _try_json(fixed + suffix)
        if ok:
            logger.debug("parse_json: recovered with suffix %r", suffix)
            return Parsed(val)

    logger.warning("parse_json: all strategies failed. Preview: %s", text[:400])
    return Unparseable(text)


def _try_json(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def fix_json_issues(text: str) -> str:
    """Repair the most common JSON mangling patterns from LLMs."""
    # Trailing commas before ] or }
    text = re.sub(r",(\s*[}\]])", r"\1", text)
    # Python → JSON literals
    text = re.sub(r"\bTrue\b", "true", text)
    text = re.sub(r"\bFalse\b", "false", text)
    text = re.sub(r"\bNone\b", "null", text)
    # Strip line comments outside of URLs
    text = re.sub(r"(?<!:)//[^\n]*", "", text)
    return text.strip()


def extract_json_structure(text: str, open_b: str, close_b: str) -> str:
    """
    Find the first complete balanced open_b … close_b structure in *text*.
    Returns the matched fragment, or empty string if not found.
    """
    start = text.find(open_b)
    if start == -1:
        return ""

    depth = 0
    in_string = False
    escape_next = False

    for i, ch in enumerate(text[start:], start=start):
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == open_b:
            depth += 1
        elif ch == close_b:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""


# ---------------------------------------------------------------------------
# Source code
# ---------------------------------------------------------------------------

_CODE_LANGS = {"", "python", "py", "python3"}
_CODE_START_RE = re.compile(r"^(?:import |from |async def |def |@|[A-Z_][A-Z0-9_]* = )", re.MULTILINE)


def extract_code(text: str) -> str:
    """
    Pull generator source out of an assistant reply.

    Prefers a fenced block that defines ``generate``; otherwise the longest
    python-ish fenced block; otherwise the reply from the first line that
    looks like code, with any trailing prose fence removed.
    """
    if not text or not text.strip():
        return ""

    blocks = [body for lang, body in _fenced_blocks(text) if lang.lower() in _CODE_LANGS]
    if blocks:
        for body in blocks:
            if re.search(r"^\s*(?:async\s+)?def\s+generate\s*\(", body, re.MULTILINE):
                return body.strip()
        return max(blocks, key=len).strip()

    match = _CODE_START_RE.search(text)
    if not match:
        return ""
    code = text[match.start():]
    # Drop an unterminated fence or trailing explanation after the code
    code = code.split("```", 1)[0]
    return code.strip()


def _fenced_blocks(text: str) -> List[Tuple[str, str]]:
    return [(m.group(1), m.group(2)) for m in _FENCE_RE.finditer(text)]
