"""Queries over a ThreadSet: blocking forests and deadlock cycles."""

import io
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, TextIO

from .model import ThreadLock, ThreadRecord
from .runtime import RuntimeSnapshot, ThreadSet


class QueryResult:
    """Text rendering shared by query results: result, involved threads, summary."""

    def __init__(self, show_stack_traces: bool = False):
        self.show_stack_traces = show_stack_traces

    def print_into(self, out: TextIO) -> None:
        self.print_result(out)
        involved = self.involved_threads()
        if involved is not None:
            out.write("\n")
            out.write(str(involved))
        self.print_summary(out)

    def print_result(self, out: TextIO) -> None:
        raise NotImplementedError

    def print_summary(self, out: TextIO) -> None:
        pass

    def involved_threads(self) -> Optional[ThreadSet]:
        return None

    def exit_code(self) -> int:
        return 0

    def __str__(self) -> str:
        out = io.StringIO()
        self.print_into(out)
        return out.getvalue()


class Tree:
    """Blocking tree node.

    A `root` with directly blocked subtrees (`leaves`). If the leaf set is empty
    the root thread does not block any other threads.
    """

    def __init__(self, root: ThreadRecord, leaves: Iterable["Tree"] = ()):
        self.root = root
        self.leaves: FrozenSet[Tree] = frozenset(leaves)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Tree):
            return NotImplemented
        return self.root == other.root and self.leaves == other.leaves

    def __hash__(self) -> int:
        return hash((self.root, self.leaves))

    def __str__(self) -> str:
        lines: List[str] = []
        self._write_into("", lines)
        return "".join(lines)

    def __repr__(self) -> str:
        return f"<Tree {self.root.name!r} leaves={len(self.leaves)}>"

    def _write_into(self, prefix: str, lines: List[str]) -> None:
        lines.append(f"{prefix}{self.root.header}\n")
        for leaf in self.leaves:
            leaf._write_into(prefix + "\t", lines)


class BlockingTreeResult(QueryResult):
    def __init__(self, threads: ThreadSet, show_stack_traces: bool = False):
        super().__init__(show_stack_traces)
        runtime = threads.runtime

        roots: Set[Tree] = set()
        for thread in runtime.threads:
            if self._is_root(runtime, thread):
                roots.add(Tree(thread, self._build_down(runtime, thread, {thread})))

        self.trees: FrozenSet[Tree] = frozenset(self._filter(roots, threads))

        involved: Dict[ThreadRecord, None] = {}
        for tree in self.trees:
            self._flatten(tree, involved)
        self.involved = threads.derive(involved)
        self._threads = threads

    @staticmethod
    def _is_candidate(runtime: RuntimeSnapshot, thread: ThreadRecord) -> bool:
        return (
            thread.waiting_on_lock is None
            and bool(thread.acquired_locks)
            and bool(runtime.blocked_threads(thread))
        )

    def _is_root(self, runtime: RuntimeSnapshot, thread: ThreadRecord) -> bool:
        """Candidate with no other candidate above it in its blocking chain.

        Threads blocked by a waiting holder or by a deadlock stay roots, deadlocked
        threads themselves never are.
        """
        if not self._is_candidate(runtime, thread):
            return False

        chain: Dict[ThreadRecord, int] = {}
        cycle_start = None
        blocking = runtime.blocking_thread(thread)
        while blocking is not None:
            if blocking == thread:
                return False
            if blocking in chain:
                cycle_start = chain[blocking]
                break
            chain[blocking] = len(chain)
            blocking = runtime.blocking_thread(blocking)

        ancestors = list(chain)[:cycle_start]
        return not any(self._is_candidate(runtime, ancestor) for ancestor in ancestors)

    def _build_down(self, runtime: RuntimeSnapshot, thread: ThreadRecord, path: Set[ThreadRecord]) -> Set[Tree]:
        trees = set()
        for blocked in runtime.blocked_threads(thread):
            # Corrupted dump can describe a cycle
            if blocked in path:
                continue
            trees.add(Tree(blocked, self._build_down(runtime, blocked, path | {blocked})))
        return trees

    def _filter(self, trees: Iterable[Tree], threads: ThreadSet) -> Set[Tree]:
        filtered = set()
        for tree in trees:
            # Whitelisted threads including their subtrees
            if tree.root in threads:
                filtered.add(tree)
                continue

            # Keep as connecting ancestor only when something below survives
            leaves = self._filter(tree.leaves, threads)
            if leaves:
                filtered.add(Tree(tree.root, leaves))
        return filtered

    def _flatten(self, tree: Tree, accumulator: Dict[ThreadRecord, None]) -> None:
        accumulator[tree.root] = None
        for leaf in tree.leaves:
            self._flatten(leaf, accumulator)

    def roots(self) -> ThreadSet:
        return self._threads.derive(tree.root for tree in self.trees)

    def print_result(self, out: TextIO) -> None:
        for tree in self.trees:
            out.write(str(tree))
            out.write("\n")

    def involved_threads(self) -> Optional[ThreadSet]:
        return self.involved if self.show_stack_traces else None


class BlockingTree:
    """Forest of threads transitively blocking the threads of interest."""

    def __init__(self, show_stack_traces: bool = False):
        self.show_stack_traces = show_stack_traces

    def query(self, threads: ThreadSet) -> BlockingTreeResult:
        return BlockingTreeResult(threads, self.show_stack_traces)


class DeadlocksResult(QueryResult):
    """All deadlocks found. Involved threads are the threads of any deadlock."""

    def __init__(self, threads: ThreadSet, show_stack_traces: bool = False):
        super().__init__(show_stack_traces)
        runtime = threads.runtime

        deadlocks: List[ThreadSet] = []
        involved: Dict[ThreadRecord, None] = {}
        # No need to walk from a thread more than once
        analyzed: Set[ThreadRecord] = set()

        for thread in threads:
            if thread in analyzed:
                continue

            chain: Dict[ThreadRecord, int] = {}
            blocking = runtime.blocking_thread(thread)
            while blocking is not None:
                if blocking in chain:
                    cycle = list(chain)[chain[blocking]:]
                    deadlock = threads.derive(cycle)
                    if deadlock not in deadlocks:
                        deadlocks.append(deadlock)
                    involved.update(dict.fromkeys(cycle))
                    break
                if blocking in analyzed:
                    break

                chain[blocking] = len(chain)
                blocking = runtime.blocking_thread(blocking)

            analyzed.add(thread)
            analyzed.update(chain)

        self.deadlocks: List[ThreadSet] = deadlocks
        self.involved = threads.derive(involved)

    def print_result(self, out: TextIO) -> None:
        for i, deadlock in enumerate(self.deadlocks, 1):
            involved_locks: Set[Optional[ThreadLock]] = {t.waiting_to_lock for t in deadlock}

            out.write(f"\nDeadlock #{i}:\n")
            for thread in deadlock:
                out.write(f"{thread.header}\n")
                out.write(f"\tWaiting to {thread.waiting_to_lock}\n")
                for lock in thread.acquired_locks:
                    mark = "*" if lock in involved_locks else " "
                    out.write(f"\tAcquired {mark} {lock}\n")

    def involved_threads(self) -> Optional[ThreadSet]:
        return self.involved if self.show_stack_traces else None

    def print_summary(self, out: TextIO) -> None:
        out.write(f"\n{len(self.deadlocks)} deadlocks detected\n")

    def exit_code(self) -> int:
        return len(self.deadlocks)


class Deadlocks:
    """Detect cycles of blocked threads reachable from the threads of interest."""

    def __init__(self, show_stack_traces: bool = False):
        self.show_stack_traces = show_stack_traces

    def query(self, threads: ThreadSet) -> DeadlocksResult:
        return DeadlocksResult(threads, self.show_stack_traces)
