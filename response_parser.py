"""
Turns a raw language-model reply into the JSON object the planner expects.

Models wrap their JSON in prose, fence it in markdown, truncate it when they
hit the token limit, and occasionally forget quotes. Parsing therefore runs in
two phases. First the most likely JSON candidate is cut out of the reply.
Then, only if that candidate does not parse, a fixed sequence of structural
repairs is applied, re-parsing after each one so a repair is never applied
to text that was already valid.

When everything fails the caller gets an UnprocessableResponseError carrying
the raw reply. salvage_decision is the separate, last-resort path that pulls a
tool name out of such a reply with regular expressions.
"""
import json
import logging
import re
from typing import Any, Callable, Optional

from exceptions import UnprocessableResponseError
from tracer import trace

FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
FENCE_MARKERS = re.compile(r"```(?:json)?\n?|\n?```")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
TRAILING_COMMA = re.compile(r",\s*([}\]])")
BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
STRING_PARAMS = re.compile(r'"params"\s*:\s*"([^"]*)"')

SALVAGE_TOOL = re.compile(r'"tool"\s*:\s*"([^"]+)"')
SALVAGE_PARAMS = re.compile(r'"params"\s*:\s*(\{[^}]*\}?)')
SALVAGE_EXPLANATION = "Extracted from partial response"
SALVAGE_NEXT_STEP = "Continue with the next operation"


# --- Candidate extraction ---
def _scan(text: str):
    """
    Walks text outside of JSON strings. Yields (index, char) for structural
    characters and finally returns whether the text ended inside a string.
    """
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        else:
            yield i, ch
    return in_string


def _first_brace_object(text: str) -> Optional[str]:
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    for i, ch in _scan(text[start:]):
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : start + i + 1]
    # Unclosed: the object runs to the end of the reply.
    return text[start:]


def extract_json_candidate(text: str) -> str:
    """Fenced block first, then the first brace-delimited object, then the de-fenced text."""
    match = FENCED_JSON.search(text)
    if match:
        return match.group(1).strip()
    candidate = _first_brace_object(text)
    if candidate is not None:
        return candidate.strip()
    return FENCE_MARKERS.sub("", text).strip()


# --- Repair stages ---
def close_open_structures(s: str) -> str:
    """Closes an unterminated string, then every open object and array in nesting order."""
    stack = []
    scanner = _scan(s)
    while True:
        try:
            _, ch = next(scanner)
        except StopIteration as stop:
            in_string = stop.value
            break
        if ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()

    if in_string:
        s += '"'
    if not stack:
        return s
    tail = s.rstrip()
    if tail.endswith(","):
        s = tail[:-1]
    elif tail.endswith(":"):
        s = tail + " null"
    return s + "".join(reversed(stack))


def drop_trailing_commas(s: str) -> str:
    return TRAILING_COMMA.sub(r"\1", s)


def quote_bare_keys(s: str) -> str:
    return BARE_KEY.sub(r'\1"\2":', s)


def _pairs_to_dict(raw: str) -> Optional[dict]:
    """Reads 'k: v, k2=v2' style text. Returns None when there are no pairs."""
    if ":" not in raw and "=" not in raw:
        return None
    params = {}
    for pair in raw.split(","):
        parts = re.split(r"[:=]", pair, maxsplit=1)
        if len(parts) == 2 and parts[0].strip():
            params[parts[0].strip().strip("'\"")] = parts[1].strip().strip("'\"")
    return params or None


def _params_string_to_object(match: re.Match) -> str:
    params = _pairs_to_dict(match.group(1))
    if params is None:
        return match.group(0)
    return f'"params": {json.dumps(params)}'


def params_string_to_object(s: str) -> str:
    """Turns '"params": "app_name: Safari"' into '"params": {"app_name": "Safari"}'."""
    return STRING_PARAMS.sub(_params_string_to_object, s)


def escape_inner_quotes(s: str, max_iterations: int = 200) -> str:
    """
    Escapes stray double quotes inside string values, one at a time, using the
    position of each parser error to find the offending quote.
    """
    for _ in range(max_iterations):
        try:
            json.loads(s)
            return s
        except json.JSONDecodeError as e:
            if "Expecting" not in e.msg and "Unterminated string" not in e.msg:
                return s
            quote_pos = s.rfind('"', 0, e.pos)
            if quote_pos == -1:
                return s
            p = quote_pos - 1
            slashes = 0
            while p >= 0 and s[p] == "\\":
                slashes += 1
                p -= 1
            if slashes % 2 == 1:
                return s
            s = s[:quote_pos] + "\\" + s[quote_pos:]
    return s


REPAIR_STAGES: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("close open structures", close_open_structures),
    ("drop trailing commas", drop_trailing_commas),
    ("quote bare keys", quote_bare_keys),
    ("params string to object", params_string_to_object),
    ("escape inner quotes", escape_inner_quotes),
)


def repair_json(s: str) -> Any:
    """
    Applies the repair stages cumulatively until the text parses.

    Raises:
        json.JSONDecodeError: from the final attempt, when no stage helped.
    """
    for name, stage in REPAIR_STAGES:
        s = stage(s)
        try:
            value = json.loads(s)
        except json.JSONDecodeError as e:
            last_error = e
            continue
        logging.info(f"Recovered model JSON after the '{name}' repair.")
        return value
    raise last_error


# --- Public API ---
@trace
def parse_plan_response(text: Optional[str]) -> dict:
    """
    Decodes a model reply into a JSON object.

    Raises:
        UnprocessableResponseError: nothing parseable, or the JSON is not an object.
    """
    raw = text or ""
    candidate = CONTROL_CHARS.sub("", extract_json_candidate(raw))
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError:
        try:
            value = repair_json(candidate)
        except json.JSONDecodeError as e:
            logging.warning(f"Model reply could not be repaired: {e}")
            raise UnprocessableResponseError(raw) from e
    if not isinstance(value, dict):
        raise UnprocessableResponseError(raw)
    if isinstance(value.get("params"), str):
        params = _pairs_to_dict(value["params"])
        if params is not None:
            value["params"] = params
    return value


@trace
def salvage_decision(raw_text: Optional[str]) -> Optional[dict]:
    """
    Degraded recovery: regex out a tool name and, if possible, a flat params
    object. Returns None when no tool name is present.
    """
    if not raw_text:
        return None
    tool_match = SALVAGE_TOOL.search(raw_text)
    if not tool_match:
        return None

    params: dict = {}
    params_match = SALVAGE_PARAMS.search(raw_text)
    if params_match:
        try:
            parsed = json.loads(params_match.group(1))
        except json.JSONDecodeError:
            try:
                parsed = repair_json(params_match.group(1))
            except json.JSONDecodeError:
                parsed = None
        if isinstance(parsed, dict):
            params = parsed

    return {
        "tool": tool_match.group(1),
        "params": params,
        "explanation": SALVAGE_EXPLANATION,
        "isCompleted": False,
        "nextStep": SALVAGE_NEXT_STEP,
        "salvaged": True,
    }
