"""Runtime snapshot and read-only thread set views over it."""

import re
from collections.abc import Set
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Pattern, Tuple, Union

from .model import ThreadLock, ThreadRecord

ThreadPredicate = Callable[[ThreadRecord], bool]


class RuntimeSnapshot:
    """All threads captured at one instant plus the free-text dump header."""

    def __init__(self, threads: Iterable[ThreadRecord], header: Iterable[str] = ()):
        self._threads: Tuple[ThreadRecord, ...] = tuple(dict.fromkeys(threads))
        self._header: Tuple[str, ...] = tuple(header)
        self._hash: Optional[int] = None

        self._holders: Dict[ThreadLock, List[ThreadRecord]] = {}
        self._waiters: Dict[ThreadLock, List[ThreadRecord]] = {}
        for thread in self._threads:
            for lock in thread.acquired_locks:
                self._holders.setdefault(lock, []).append(thread)
            if thread.waiting_to_lock is not None:
                self._waiters.setdefault(thread.waiting_to_lock, []).append(thread)

    @property
    def threads(self) -> "ThreadSet":
        return ThreadSet(self, self._threads)

    @property
    def header(self) -> Tuple[str, ...]:
        return self._header

    def blocking_thread(self, thread: ThreadRecord) -> Optional[ThreadRecord]:
        """Thread holding the lock `thread` is waiting to lock, if any."""
        if thread.waiting_to_lock is None:
            return None
        for holder in self._holders.get(thread.waiting_to_lock, ()):
            if holder != thread:
                return holder
        return None

    def blocked_threads(self, thread: ThreadRecord) -> "ThreadSet":
        """Threads waiting to lock any of the locks `thread` holds."""
        blocked = {}
        for lock in thread.acquired_locks:
            for waiter in self._waiters.get(lock, ()):
                if waiter != thread:
                    blocked[waiter] = None
        return ThreadSet(self, [t for t in self._threads if t in blocked])

    def query(self, query):
        return self.threads.query(query)

    def __eq__(self, other) -> bool:
        if self is other:
            return True
        if not isinstance(other, RuntimeSnapshot):
            return NotImplemented
        return self._header == other._header and self._threads == other._threads

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash((self._header, self._threads))
        return self._hash

    def __str__(self) -> str:
        body = str(self.threads)
        if not self._header:
            return body
        return "\n".join(self._header) + "\n\n" + body

    def __repr__(self) -> str:
        return f"<RuntimeSnapshot threads={len(self._threads)}>"


class ThreadSet(Set):
    """Read-only subset of the threads of a single RuntimeSnapshot.

    Iteration follows the order threads were added in, which for sets derived
    from the snapshot is the order of the dump.
    """

    def __init__(self, runtime: RuntimeSnapshot, threads: Iterable[ThreadRecord]):
        self._runtime = runtime
        self._threads: Dict[ThreadRecord, None] = dict.fromkeys(threads)

    @property
    def runtime(self) -> RuntimeSnapshot:
        return self._runtime

    def __iter__(self) -> Iterator[ThreadRecord]:
        return iter(self._threads)

    def __len__(self) -> int:
        return len(self._threads)

    def __contains__(self, thread) -> bool:
        return thread in self._threads

    @classmethod
    def _from_iterable(cls, iterable):
        raise TypeError("Use ThreadSet.derive() to combine thread sets")

    def __and__(self, other):
        return self.derive(t for t in self if t in other)

    def __or__(self, other):
        return self.derive(list(self) + list(other))

    def __sub__(self, other):
        return self.derive(t for t in self if t not in other)

    def __xor__(self, other):
        return self.derive([t for t in self if t not in other] + [t for t in other if t not in self])

    def derive(self, threads: Iterable[ThreadRecord]) -> "ThreadSet":
        """New set of `threads` scoped to the same runtime."""
        return ThreadSet(self._runtime, threads)

    def where(self, predicate: ThreadPredicate) -> "ThreadSet":
        return self.derive(t for t in self._threads if predicate(t))

    def only_thread(self) -> ThreadRecord:
        if len(self._threads) != 1:
            raise ValueError(f"Exactly one thread expected in the set. Found {len(self._threads)}")
        return next(iter(self._threads))

    def blocking_threads(self) -> "ThreadSet":
        blocking = (self._runtime.blocking_thread(t) for t in self._threads)
        return self.derive(t for t in blocking if t is not None)

    def blocked_threads(self) -> "ThreadSet":
        blocked: List[ThreadRecord] = []
        for thread in self._threads:
            blocked.extend(self._runtime.blocked_threads(thread))
        return self.derive(blocked)

    def query(self, query):
        return query.query(self)

    def _read_only(self, *args, **kwargs):
        raise TypeError("ThreadSet is read-only")

    add = discard = remove = pop = clear = update = _read_only

    def __eq__(self, other) -> bool:
        if self is other:
            return True
        if not isinstance(other, ThreadSet):
            return NotImplemented
        return self._runtime is other._runtime and self._threads.keys() == other._threads.keys()

    def __hash__(self) -> int:
        return hash((id(self._runtime), frozenset(self._threads)))

    def __str__(self) -> str:
        return "".join(f"{thread}\n\n" for thread in self._threads)

    def __repr__(self) -> str:
        names = ", ".join(repr(t.name) for t in self._threads)
        return f"<ThreadSet [{names}]>"


def name_is(name: str) -> ThreadPredicate:
    return lambda thread: thread.name == name


def name_contains(pattern: Union[str, Pattern]) -> ThreadPredicate:
    regex = re.compile(pattern)
    return lambda thread: regex.search(thread.name) is not None
