"""
Call-flow tracing for the agent.

Functions decorated with @trace record when they are entered and left, what
they returned or raised, and how long they took. Calls made while another
traced call is running are nested under it, giving one call tree per
top-level call. The channel reader, the thread pool and the request handlers
all run on different threads, so each thread keeps its own stack. Finished
trees go into a bounded log that the /trace route and the 'get_trace_log'
socket event read from.
"""
import functools
import inspect
import os
import re
import threading
import time
from collections import deque
from typing import Any

from config import TRACE_MAX_ENTRIES

_ADDRESS = re.compile(r"\s+at\s+0x[0-9a-fA-F]+")


def _short_repr(value: Any, limit: int = 300) -> str:
    """repr() without memory addresses, cut off at limit characters (model replies can be long)."""
    text = _ADDRESS.sub("", repr(value))
    return text if len(text) <= limit else text[:limit] + "..."


def _prune(entry: Any) -> Any:
    """Copies a trace entry tree, leaving out empty 'nested_calls' lists."""
    if isinstance(entry, list):
        return [_prune(e) for e in entry if e]
    if not isinstance(entry, dict):
        return entry
    pruned = {k: v for k, v in entry.items() if k != "nested_calls" and not k.startswith("_")}
    children = _prune(entry.get("nested_calls") or [])
    if children:
        pruned["nested_calls"] = children
    return pruned


def _module_of(path: str) -> str:
    return os.path.splitext(os.path.basename(path))[0]


class Tracer:
    """Builds one call tree per thread and keeps the most recent trees."""

    def __init__(self, max_entries: int = TRACE_MAX_ENTRIES):
        self._lock = threading.Lock()
        self._local = threading.local()
        self.trace_log: deque = deque(maxlen=max_entries)

    def reset(self) -> None:
        """Clears the recorded log. Calls currently in flight keep their stacks."""
        with self._lock:
            self.trace_log.clear()

    @property
    def call_stack(self) -> list:
        if not hasattr(self._local, "stack"):
            self._local.stack = []
        return self._local.stack

    def _record(self, entry: dict) -> None:
        """Attaches entry to the running call on this thread, or starts a new tree."""
        stack = self.call_stack
        if stack:
            stack[-1].setdefault("nested_calls", []).append(entry)
            return
        entry["thread"] = threading.current_thread().name
        with self._lock:
            self.trace_log.append(entry)

    def start_trace(self, module: str, func_name: str) -> None:
        entry = {"function": f"{module}.{func_name}", "_started": time.perf_counter()}
        self._record(entry)
        self.call_stack.append(entry)

    def end_trace(self, outcome: Any, is_exception: bool = False) -> None:
        stack = self.call_stack
        if not stack:
            return
        entry = stack.pop()
        entry["elapsed_ms"] = round((time.perf_counter() - entry.pop("_started")) * 1000, 2)
        if is_exception:
            entry["exception"] = _short_repr(outcome)
        elif outcome is not None and not (isinstance(outcome, (str, list, dict, tuple)) and not outcome):
            entry["return_value"] = _short_repr(outcome)

    def add_event(self, entry: dict) -> None:
        self._record(entry)

    def get_trace(self, limit: int | None = None) -> list:
        """The most recent trees, oldest first. Calls still running are included as they stand."""
        with self._lock:
            entries = list(self.trace_log)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [_prune(e) for e in entries]


global_tracer = Tracer()


def log_event(event_name: str, details: dict | None = None) -> None:
    """Adds a named marker to the current call tree, e.g. the start of an orchestration step."""
    module = _module_of(inspect.stack()[1].filename)
    entry = {"type": "EVENT", "event_name": f"{module}.{event_name}"}
    if details:
        entry["details"] = _short_repr(details)
    global_tracer.add_event(entry)


def trace(func):
    """Decorator: records each call of func in the global tracer."""
    module = _module_of(inspect.getfile(func))
    name = func.__qualname__

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        global_tracer.start_trace(module, name)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            global_tracer.end_trace(e, is_exception=True)
            raise
        global_tracer.end_trace(result)
        return result

    return wrapper
