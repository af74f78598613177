import logging
import re
from functools import lru_cache
from typing import IO, List, Optional, Union

from .errors import EmptyDumpError, MalformedChunkError, StructuralParseError
from .model import Monitor, StackFrame, StackTrace, ThreadBuilder, ThreadLock, ThreadStatus, WAIT_FRAME
from .runtime import RuntimeSnapshot

# This module intentionally has no external dependencies so it can be used in tests
# without requiring the MCP runtime libraries.

logger = logging.getLogger(__name__)

NL = r"(?:\r\n|\n)"
LOCK_SUBPATTERN = r"<(?:0x)?(\w+)> \(a ([^\)]+)\)"

EMPTY_RE = re.compile(r"^\s*$")
# Some dumps omit the blank line between threads, so a line starting with a quote splits too
THREAD_DELIMITER_RE = re.compile(NL + r"(?:" + NL + r"(?!\s)|(?=\"))")
FRAME_INDENT_RE = re.compile(r"(  )+at .*")
# Module name and version are ignored: java.lang.Thread.sleep(java.base@9-ea/Native Method)
STACK_FRAME_RE = re.compile(r"\s*at (\S+)\.(\S+)\((?:.+/)?([^:]+?)(:\d+)?\)")
ACQUIRED_RE = re.compile(r"- locked " + LOCK_SUBPATTERN)
# jstack puts extra space after 'parking to wait for'
WAITING_ON_RE = re.compile(r"- (?:waiting on|parking to wait for ?) " + LOCK_SUBPATTERN)
WAITING_TO_LOCK_RE = re.compile(r"- waiting to lock " + LOCK_SUBPATTERN)
OWNABLE_SYNCHRONIZER_RE = re.compile(r"- (?:locked )?" + LOCK_SUBPATTERN)
THREAD_HEADER_RE = re.compile(
    r'^"(.+?)" ([^\n\r]+)(?:' + NL + r"\s+java.lang.Thread.State: ([^\n\r]+)(?:" + NL + r"(.+))?)?",
    re.DOTALL,
)

_UNSIGNED_MASK = (1 << 64) - 1


def parse_long(value: str) -> int:
    """Parse hex literal, with or without 0x prefix, into signed 64-bit integer.

    Values over the signed range wrap around the way the JVM stores them.
    """
    if value.startswith("0x"):
        value = value[2:]
    number = int(value, 16) & _UNSIGNED_MASK
    if number >= 1 << 63:
        number -= 1 << 64
    return number


def parse_nid(value: str) -> int:
    # Our own rendering prints nid in decimal
    if value.startswith("0x"):
        return parse_long(value)
    return int(value)


@lru_cache(maxsize=4096)
def parse_stack_frame(line: str) -> Optional[StackFrame]:
    if not line.startswith("\tat ") and not FRAME_INDENT_RE.fullmatch(line):
        return None

    match = STACK_FRAME_RE.search(line)
    if not match:
        return None

    source_file: Optional[str] = match.group(3)
    source_line = int(match.group(4)[1:]) if match.group(4) else StackFrame.UNKNOWN_LINE
    if source_line == StackFrame.UNKNOWN_LINE and source_file == "Native Method":
        source_file = None
        source_line = StackFrame.NATIVE_LINE

    return StackFrame(match.group(1), match.group(2), source_file, source_line)


def _lock(match) -> ThreadLock:
    return ThreadLock(match.group(2), parse_long(match.group(1)))


def parse_header_attributes(builder: ThreadBuilder, attrs: str) -> None:
    for token in attrs.split():
        if token == "daemon":
            builder.daemon = True
        elif token.startswith("prio="):
            builder.priority = int(token[5:])
        elif token.startswith("tid="):
            builder.tid = parse_long(token[4:])
        elif token.startswith("nid="):
            builder.nid = parse_nid(token[4:])
        elif re.fullmatch(r"#\d+", token):
            builder.id = int(token[1:])
        elif re.fullmatch(r"t@\d+", token):
            builder.id = int(token[2:])


def parse_stack_block(builder: ThreadBuilder, trace: str) -> None:
    frames: List[StackFrame] = []
    depth = -1

    lines = iter(re.split(NL, trace))
    for line in lines:
        frame = parse_stack_frame(line)
        if frame is not None:
            frames.append(frame)
            depth += 1
            continue

        match = ACQUIRED_RE.search(line)
        if match:
            builder.acquired_monitors.append(Monitor(_lock(match), depth))
            continue

        match = WAITING_TO_LOCK_RE.search(line)
        if match:
            if builder.waiting_to_lock is not None:
                raise StructuralParseError("Waiting to lock reported several times per single thread", trace)
            builder.waiting_to_lock = _lock(match)
            continue

        match = WAITING_ON_RE.search(line)
        if match:
            if builder.waiting_on_lock is not None:
                raise StructuralParseError("Waiting on lock reported several times per single thread", trace)
            builder.waiting_on_lock = _lock(match)
            continue

        if "Locked ownable synchronizers:" in line:
            for line in lines:
                if EMPTY_RE.match(line):
                    continue
                if "- None" in line:
                    break
                match = OWNABLE_SYNCHRONIZER_RE.search(line)
                if not match:
                    raise StructuralParseError(f"Unable to parse ownable synchronizer: {line}", trace)
                builder.acquired_synchronizers.append(_lock(match))

    builder.stack_trace = StackTrace(tuple(frames))


# Fixups compensate for inconsistencies of jstack output. They run in the order of FIXUPS.

def infer_wait_lock(builder: ThreadBuilder, chunk: str) -> None:
    """Thread entering Object.wait() can still list the monitor as locked and not waited on."""
    if builder.waiting_on_lock is not None or builder.status.is_runnable:
        return
    if builder.stack_trace.head != WAIT_FRAME:
        return

    locks = {m.lock for m in builder.acquired_monitors}
    if len(locks) == 1:
        builder.waiting_on_lock = locks.pop()
        logger.debug("FIXUP: Adjust lock state from 'locked' to 'waiting on' when thread entering Object.wait()\n%s", chunk)


def reclassify_wait_lock(builder: ThreadBuilder, chunk: str) -> None:
    """Drop the waited-on monitor from locked ones, turn it into 'waiting to' when re-entering after wait()."""
    if builder.waiting_on_lock is None:
        return

    builder.acquired_monitors = [m for m in builder.acquired_monitors if m.lock != builder.waiting_on_lock]

    if builder.status.is_blocked:
        logger.debug(
            "FIXUP: Adjust lock state from 'waiting on' to 'waiting to' when thread re-acquiring the monitor after Object.wait()\n%s",
            chunk,
        )
        builder.waiting_to_lock = builder.waiting_on_lock
        builder.waiting_on_lock = None


def drop_runnable_wait_lock(builder: ThreadBuilder, chunk: str) -> None:
    """Thread entering or leaving the parked state; PARKED and PARKED_TIMED can not be told apart so keep the status."""
    if builder.waiting_on_lock is not None and builder.status.is_runnable:
        logger.debug("FIXUP: Remove 'waiting on' lock declared on RUNNABLE thread\n%s", chunk)
        builder.waiting_on_lock = None


def _monitor_just_acquired(monitors: List[Monitor]) -> Optional[Monitor]:
    # None when the innermost monitor was entered on an outer frame too
    if not monitors:
        return None
    monitor = monitors[0]
    if monitor.depth != 0:
        return None

    for candidate in monitors:
        if candidate == monitor:
            continue
        if candidate.lock == monitor.lock:
            return None

    return monitor


def resolve_blocked_target(builder: ThreadBuilder, chunk: str) -> None:
    """Lock state can change ahead of thread state, leaving BLOCKED thread without lock to wait for."""
    if builder.waiting_to_lock is not None or not builder.status.is_blocked:
        return

    monitor = _monitor_just_acquired(builder.acquired_monitors)
    if monitor is not None:
        logger.debug("FIXUP: Adjust lock state from 'locked' to 'waiting to' on BLOCKED thread\n%s", chunk)
        builder.waiting_to_lock = monitor.lock
        del builder.acquired_monitors[0]
    else:
        logger.debug("FIXUP: Adjust thread state from 'BLOCKED' to 'RUNNABLE' when monitor is missing\n%s", chunk)
        builder.status = ThreadStatus.RUNNABLE


FIXUPS = (infer_wait_lock, reclassify_wait_lock, drop_runnable_wait_lock, resolve_blocked_target)


def fixup(builder: ThreadBuilder, chunk: str) -> ThreadBuilder:
    for fix in FIXUPS:
        fix(builder, chunk)
    return builder


def parse_thread(chunk: str) -> Optional[ThreadBuilder]:
    """Parse single thread chunk, None when the chunk is not a thread."""
    match = THREAD_HEADER_RE.match(chunk)
    if not match:
        return None

    builder = ThreadBuilder(name=match.group(1))
    try:
        parse_header_attributes(builder, match.group(2))

        trace = match.group(4)
        if trace is not None:
            parse_stack_block(builder, trace)
    except ValueError as e:
        raise StructuralParseError(f"Unable to parse number: {e}", chunk) from e

    label = match.group(3)
    if label is not None:
        builder.status = ThreadStatus.from_label(label, builder.stack_trace.head)

    return fixup(builder, chunk)


class ThreadDumpParser:
    """Create RuntimeSnapshot from thread dump produced by jstack or similar tool."""

    def __init__(self, fail_on_errors: bool = False):
        # Historically unrecognized chunks are only logged
        self.fail_on_errors = fail_on_errors

    def from_file(self, path) -> RuntimeSnapshot:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return self.from_stream(f)

    def from_stream(self, stream: IO) -> RuntimeSnapshot:
        data: Union[str, bytes] = stream.read()
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        return self.from_string(data)

    def from_string(self, text: str) -> RuntimeSnapshot:
        builders: List[ThreadBuilder] = []
        header: List[str] = []

        for chunk in THREAD_DELIMITER_RE.split(text):
            if EMPTY_RE.match(chunk):
                continue

            # Java until 8 vs. Java 9 and later
            if chunk.startswith("JNI global references") or chunk.startswith("JNI global refs"):
                # Nothing interesting after this point, deadlock report spread over several chunks included
                logger.debug("Thread dump terminated by JNI summary")
                break

            builder = parse_thread(chunk)
            if builder is not None:
                builders.append(builder)
                continue

            if chunk.startswith("Threads class SMR info:"):
                logger.debug("Skipping SMR info chunk")
                continue

            if not header and not builders:
                header.extend(re.split(NL, chunk))
                continue

            if self.fail_on_errors:
                raise MalformedChunkError("Unrecognized chunk", chunk)
            logger.warning("Skipping unrecognized chunk: >>>%s<<<", chunk)

        if not builders:
            raise EmptyDumpError("No threads found in threaddump")

        return RuntimeSnapshot((b.build() for b in builders), header)


def parse_thread_dump(text: str, fail_on_errors: bool = False) -> RuntimeSnapshot:
    return ThreadDumpParser(fail_on_errors=fail_on_errors).from_string(text)
