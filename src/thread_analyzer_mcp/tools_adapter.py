import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .errors import IllegalRuntimeStateError
from .parser import parse_thread_dump
from .queries import BlockingTree, Deadlocks, Tree
from .runtime import RuntimeSnapshot, ThreadSet, name_contains

logger = logging.getLogger(__name__)

MAX_DUMP_SIZE = 10 * 1024 * 1024

STATES = ["RUNNABLE", "BLOCKED", "WAITING", "TIMED_WAITING", "NEW", "TERMINATED"]


@dataclass
class Result:
    ok: bool
    text: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @staticmethod
    def ok_text(payload: Dict) -> "Result":
        return Result(ok=True, text=json.dumps(payload))

    @staticmethod
    def err(code: str, message: str) -> "Result":
        return Result(ok=False, error_code=code, error_message=message)


def _load_runtime(path: str, fail_on_errors: bool) -> Union[RuntimeSnapshot, Result]:
    if not isinstance(path, str) or not path:
        return Result.err("INVALID_PARAMS", "'path' must be a non-empty string")
    if not isinstance(fail_on_errors, bool):
        return Result.err("INVALID_PARAMS", "'fail_on_errors' must be a boolean")
    if not os.path.exists(path):
        return Result.err("INVALID_PARAMS", f"File not found: {path}")
    if os.path.isdir(path):
        return Result.err("INVALID_PARAMS", f"Path is a directory: {path}")
    if os.path.getsize(path) > MAX_DUMP_SIZE:
        return Result.err("INTERNAL_ERROR", "File too large (>10MB)")

    with open(path, "r", encoding="utf-8", errors="replace") as f:
        text = f.read()
    try:
        return parse_thread_dump(text, fail_on_errors=fail_on_errors)
    except IllegalRuntimeStateError as e:
        logger.info("Unable to parse %s: %s", path, e)
        return Result.err("INVALID_PARAMS", f"Invalid thread dump: {e}")


def _select(runtime: RuntimeSnapshot, thread_pattern: Optional[str]) -> Union[ThreadSet, Result]:
    if thread_pattern is None:
        return runtime.threads
    if not isinstance(thread_pattern, str):
        return Result.err("INVALID_PARAMS", "'thread_pattern' must be a string")
    try:
        return runtime.threads.where(name_contains(thread_pattern))
    except re.error as e:
        return Result.err("INVALID_PARAMS", f"'thread_pattern' is not a valid regular expression: {e}")


def _prepare(
    path: str, thread_pattern: Optional[str], show_stack_traces: bool, fail_on_errors: bool
) -> Union[ThreadSet, Result]:
    if not isinstance(show_stack_traces, bool):
        return Result.err("INVALID_PARAMS", "'show_stack_traces' must be a boolean")
    runtime = _load_runtime(path, fail_on_errors)
    if isinstance(runtime, Result):
        return runtime
    return _select(runtime, thread_pattern)


def _names(threads) -> List[str]:
    return [t.name for t in threads]


def _tree_payload(tree: Tree) -> Dict[str, Any]:
    leaves = sorted(tree.leaves, key=lambda leaf: leaf.root.name)
    return {"thread": tree.root.name, "blocked": [_tree_payload(leaf) for leaf in leaves]}


def analyze_tool_call(path: str, fail_on_errors: bool = False) -> Result:
    try:
        runtime = _load_runtime(path, fail_on_errors)
        if isinstance(runtime, Result):
            return runtime

        counts: Dict[str, int] = {s: 0 for s in STATES}
        unknown = 0
        for thread in runtime.threads:
            state = thread.status.state
            if state is None:
                unknown += 1
            else:
                counts[state] += 1

        deadlocks = runtime.query(Deadlocks())
        blocking = runtime.query(BlockingTree())

        summary = (
            f"Analyzed {len(runtime.threads)} threads. "
            f"States: " + (", ".join(f"{k}={v}" for k, v in counts.items() if v) or "none")
            + f"; deadlocks={len(deadlocks.deadlocks)}; blocking roots={len(blocking.roots())}"
        )
        payload = {
            "summary": summary,
            "threads": len(runtime.threads),
            "counts": counts,
            "unknown": unknown,
            "deadlocks": [_names(d) for d in deadlocks.deadlocks],
            "blocking_roots": _names(blocking.roots()),
        }
        return Result.ok_text(payload)
    except Exception as e:  # pragma: no cover
        logger.exception("analyze_thread_dump failed")
        return Result.err("INTERNAL_ERROR", f"Exception: {e}")


def deadlocks_tool_call(
    path: str,
    thread_pattern: Optional[str] = None,
    show_stack_traces: bool = False,
    fail_on_errors: bool = False,
) -> Result:
    try:
        threads = _prepare(path, thread_pattern, show_stack_traces, fail_on_errors)
        if isinstance(threads, Result):
            return threads

        result = threads.query(Deadlocks(show_stack_traces=show_stack_traces))
        payload = {
            "deadlocks": result.exit_code(),
            "cycles": [_names(d) for d in result.deadlocks],
            "report": str(result),
        }
        return Result.ok_text(payload)
    except Exception as e:  # pragma: no cover
        logger.exception("detect_deadlocks failed")
        return Result.err("INTERNAL_ERROR", f"Exception: {e}")


def blocking_tree_tool_call(
    path: str,
    thread_pattern: Optional[str] = None,
    show_stack_traces: bool = False,
    fail_on_errors: bool = False,
) -> Result:
    try:
        threads = _prepare(path, thread_pattern, show_stack_traces, fail_on_errors)
        if isinstance(threads, Result):
            return threads

        result = threads.query(BlockingTree(show_stack_traces=show_stack_traces))
        trees = sorted(result.trees, key=lambda tree: tree.root.name)
        payload = {
            "roots": sorted(_names(result.roots())),
            "trees": [_tree_payload(tree) for tree in trees],
            "report": str(result),
        }
        return Result.ok_text(payload)
    except Exception as e:  # pragma: no cover
        logger.exception("blocking_tree failed")
        return Result.err("INTERNAL_ERROR", f"Exception: {e}")
