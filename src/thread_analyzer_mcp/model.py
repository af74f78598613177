"""Immutable model of threads captured in a single JVM thread dump."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import InvariantViolationError

_UNSIGNED_MASK = (1 << 64) - 1


@dataclass(frozen=True)
class ThreadLock:
    """Monitor or ownable synchronizer identified by class name and address."""

    class_name: str
    identity: int

    def __str__(self) -> str:
        return f"<0x{self.identity & _UNSIGNED_MASK:x}> (a {self.class_name})"


@dataclass(frozen=True)
class Monitor:
    """Lock entered on stack frame `depth`, 0 being the innermost frame."""

    lock: ThreadLock
    depth: int


@dataclass(frozen=True)
class StackFrame:
    class_name: str
    method_name: str
    file_name: Optional[str] = None
    line_number: int = -1

    UNKNOWN_LINE = -1
    NATIVE_LINE = -2

    @classmethod
    def native(cls, class_name: str, method_name: str) -> "StackFrame":
        return cls(class_name, method_name, None, cls.NATIVE_LINE)

    @property
    def is_native(self) -> bool:
        return self.line_number == self.NATIVE_LINE

    def __str__(self) -> str:
        if self.is_native:
            location = "Native Method"
        elif self.file_name is None:
            location = "Unknown Source"
        elif self.line_number >= 0:
            location = f"{self.file_name}:{self.line_number}"
        else:
            location = self.file_name
        return f"{self.class_name}.{self.method_name}({location})"


WAIT_FRAME = StackFrame.native("java.lang.Object", "wait")
SLEEP_FRAME = StackFrame.native("java.lang.Thread", "sleep")


@dataclass(frozen=True)
class StackTrace:
    """Call stack, innermost frame first."""

    frames: Tuple[StackFrame, ...] = ()

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self) -> Iterator[StackFrame]:
        return iter(self.frames)

    def __getitem__(self, index: int) -> StackFrame:
        return self.frames[index]

    def element(self, index: int) -> Optional[StackFrame]:
        if 0 <= index < len(self.frames):
            return self.frames[index]
        return None

    @property
    def head(self) -> Optional[StackFrame]:
        return self.element(0)


class ThreadStatus(Enum):
    """Thread status as reported on the `java.lang.Thread.State:` line."""

    NEW = ("NEW", "NEW")
    RUNNABLE = ("RUNNABLE", "RUNNABLE")
    SLEEPING = ("TIMED_WAITING (sleeping)", "TIMED_WAITING")
    IN_OBJECT_WAIT = ("WAITING (on object monitor)", "WAITING")
    IN_OBJECT_WAIT_TIMED = ("TIMED_WAITING (on object monitor)", "TIMED_WAITING")
    PARKED = ("WAITING (parking)", "WAITING")
    PARKED_TIMED = ("TIMED_WAITING (parking)", "TIMED_WAITING")
    BLOCKED = ("BLOCKED (on object monitor)", "BLOCKED")
    TERMINATED = ("TERMINATED", "TERMINATED")
    UNKNOWN = ("UNKNOWN", None)

    def __init__(self, label: str, state: Optional[str]):
        self.label = label
        self.state = state

    @property
    def is_runnable(self) -> bool:
        return self is ThreadStatus.RUNNABLE

    @property
    def is_blocked(self) -> bool:
        return self is ThreadStatus.BLOCKED

    @property
    def is_waiting(self) -> bool:
        return self in (ThreadStatus.IN_OBJECT_WAIT, ThreadStatus.IN_OBJECT_WAIT_TIMED)

    @property
    def is_parked(self) -> bool:
        return self in (ThreadStatus.PARKED, ThreadStatus.PARKED_TIMED)

    @classmethod
    def from_label(cls, label: str, head: Optional[StackFrame] = None) -> "ThreadStatus":
        """Map dump label to status, using the innermost frame when the label is ambiguous."""
        label = label.strip()
        for status in cls:
            if status.label == label:
                return status

        state = label.split(" ", 1)[0]
        timed = state == "TIMED_WAITING"
        if state == "WAITING" or timed:
            if head == WAIT_FRAME:
                return cls.IN_OBJECT_WAIT_TIMED if timed else cls.IN_OBJECT_WAIT
            if timed and head == SLEEP_FRAME:
                return cls.SLEEPING
            return cls.PARKED_TIMED if timed else cls.PARKED

        for status in cls:
            if status.state == state:
                return status

        return cls.UNKNOWN


@dataclass(frozen=True)
class ThreadRecord:
    """Immutable thread state.

    Relations to other threads (who blocks whom) are not stored here, they are
    resolved by the RuntimeSnapshot the thread belongs to.
    """

    name: str
    id: Optional[int] = None
    tid: Optional[int] = None
    nid: Optional[int] = None
    priority: Optional[int] = None
    daemon: bool = False
    status: ThreadStatus = ThreadStatus.UNKNOWN
    stack_trace: StackTrace = StackTrace()
    acquired_monitors: Tuple[Monitor, ...] = ()
    acquired_synchronizers: Tuple[ThreadLock, ...] = ()
    waiting_to_lock: Optional[ThreadLock] = None
    waiting_on_lock: Optional[ThreadLock] = None

    def __hash__(self) -> int:
        return hash((self.name, self.id, self.tid, self.nid))

    @property
    def acquired_locks(self) -> Tuple[ThreadLock, ...]:
        locks = [m.lock for m in self.acquired_monitors]
        locks.extend(self.acquired_synchronizers)
        return tuple(dict.fromkeys(locks))

    @property
    def header(self) -> str:
        parts = [f'"{self.name}"']
        if self.id is not None:
            parts.append(f"#{self.id}")
        if self.daemon:
            parts.append("daemon")
        if self.priority is not None:
            parts.append(f"prio={self.priority}")
        if self.tid is not None:
            parts.append(f"tid=0x{self.tid & _UNSIGNED_MASK:x}")
        if self.nid is not None:
            parts.append(f"nid={self.nid}")
        return " ".join(parts)

    def __str__(self) -> str:
        lines = [self.header]
        if self.status is not ThreadStatus.UNKNOWN:
            lines.append(f"   java.lang.Thread.State: {self.status.label}")

        by_depth: Dict[int, List[Monitor]] = {}
        for monitor in self.acquired_monitors:
            by_depth.setdefault(monitor.depth, []).append(monitor)

        lines.extend(f"\t- locked {m.lock}" for m in by_depth.get(-1, ()))
        if not self.stack_trace:
            lines.extend(self._wait_lines())
        for depth, frame in enumerate(self.stack_trace):
            lines.append(f"\tat {frame}")
            if depth == 0:
                lines.extend(self._wait_lines())
            lines.extend(f"\t- locked {m.lock}" for m in by_depth.get(depth, ()))

        if self.acquired_synchronizers:
            lines.append("")
            lines.append("   Locked ownable synchronizers:")
            lines.extend(f"\t- {lock}" for lock in self.acquired_synchronizers)

        return "\n".join(lines)

    def _wait_lines(self) -> List[str]:
        lines = []
        if self.waiting_to_lock is not None:
            # Re-entering the monitor after Object.wait() is reported as 'waiting on'
            verb = "waiting on" if self.stack_trace.head == WAIT_FRAME else "waiting to lock"
            lines.append(f"\t- {verb} {self.waiting_to_lock}")
        if self.waiting_on_lock is not None:
            verb = "parking to wait for " if self.status.is_parked else "waiting on"
            lines.append(f"\t- {verb} {self.waiting_on_lock}")
        return lines


@dataclass
class ThreadBuilder:
    """Mutable staging area for a thread being parsed; `build()` freezes it."""

    name: str = ""
    id: Optional[int] = None
    tid: Optional[int] = None
    nid: Optional[int] = None
    priority: Optional[int] = None
    daemon: bool = False
    status: ThreadStatus = ThreadStatus.UNKNOWN
    stack_trace: StackTrace = StackTrace()
    acquired_monitors: List[Monitor] = field(default_factory=list)
    acquired_synchronizers: List[ThreadLock] = field(default_factory=list)
    waiting_to_lock: Optional[ThreadLock] = None
    waiting_on_lock: Optional[ThreadLock] = None

    def check_sanity(self) -> None:
        status = self.status
        if self.waiting_to_lock is not None and not (status.is_blocked or status.is_parked):
            raise InvariantViolationError(
                f"{status.name} thread '{self.name}' declares waiting to lock {self.waiting_to_lock}"
            )
        if self.waiting_on_lock is not None and not (status.is_waiting or status.is_parked):
            raise InvariantViolationError(
                f"{status.name} thread '{self.name}' declares waiting on lock {self.waiting_on_lock}"
            )

    def build(self) -> ThreadRecord:
        self.check_sanity()
        return ThreadRecord(
            name=self.name,
            id=self.id,
            tid=self.tid,
            nid=self.nid,
            priority=self.priority,
            daemon=self.daemon,
            status=self.status,
            stack_trace=self.stack_trace,
            acquired_monitors=tuple(self.acquired_monitors),
            acquired_synchronizers=tuple(self.acquired_synchronizers),
            waiting_to_lock=self.waiting_to_lock,
            waiting_on_lock=self.waiting_on_lock,
        )
