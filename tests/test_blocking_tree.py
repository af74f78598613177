from pathlib import Path

import pytest

from thread_analyzer_mcp.model import Monitor, ThreadLock, ThreadRecord, ThreadStatus
from thread_analyzer_mcp.parser import parse_thread_dump
from thread_analyzer_mcp.queries import BlockingTree, Tree
from thread_analyzer_mcp.runtime import RuntimeSnapshot, name_is

BASE_DIR = Path(__file__).parent


@pytest.fixture
def runtime():
    return parse_thread_dump((BASE_DIR / "blocking_tree.txt").read_text(encoding="utf-8"))


def _only(runtime, *names):
    return runtime.threads.where(lambda t: t.name in names)


def _by_name(runtime):
    return {t.name: t for t in runtime.threads}


def test_full_forest(runtime):
    t = _by_name(runtime)
    result = runtime.query(BlockingTree())

    assert result.trees == frozenset(
        {
            Tree(t["a"], [Tree(t["aa"], [Tree(t["aaa"])]), Tree(t["ab"])]),
            Tree(t["b"], [Tree(t["ba"])]),
        }
    )
    assert set(result.roots()) == {t["a"], t["b"]}
    assert result.exit_code() == 0


def test_leaf_reconstructs_ancestors(runtime):
    t = _by_name(runtime)
    result = _only(runtime, "aaa").query(BlockingTree())

    assert result.trees == frozenset({Tree(t["a"], [Tree(t["aa"], [Tree(t["aaa"])])])})
    assert set(result.roots()) == {t["a"]}
    assert set(result.involved) == {t["a"], t["aa"], t["aaa"]}


def test_middle_thread_keeps_its_subtree(runtime):
    t = _by_name(runtime)
    result = _only(runtime, "aa").query(BlockingTree())

    assert result.trees == frozenset({Tree(t["a"], [Tree(t["aa"], [Tree(t["aaa"])])])})


def test_root_keeps_whole_tree(runtime):
    t = _by_name(runtime)
    result = _only(runtime, "a", "aaa").query(BlockingTree())

    assert result.trees == frozenset({Tree(t["a"], [Tree(t["aa"], [Tree(t["aaa"])]), Tree(t["ab"])])})


def test_unrelated_thread_yields_empty_forest(runtime):
    result = _only(runtime, "d").query(BlockingTree())

    assert result.trees == frozenset()
    assert len(result.roots()) == 0
    assert str(result) == ""


def test_rendering(runtime):
    t = _by_name(runtime)
    result = runtime.threads.where(name_is("ba")).query(BlockingTree())

    assert str(result) == f"{t['b'].header}\n\t{t['ba'].header}\n\n"


def test_rendering_with_stack_traces(runtime):
    result = runtime.threads.where(name_is("ba")).query(BlockingTree(show_stack_traces=True))
    text = str(result)

    assert result.involved_threads() is not None
    assert "\tat com.example.Worker.enter(Worker.java:10)" in text
    assert "- waiting to lock <0x3> (a java.lang.Object)" in text


def test_deadlocked_threads_are_not_roots():
    dump = parse_thread_dump((BASE_DIR / "sample_thread_dump.txt").read_text(encoding="utf-8"))
    result = dump.query(BlockingTree())

    assert result.trees == frozenset()


def test_cycle_below_root_terminates():
    l1 = ThreadLock("java.lang.Object", 1)
    l2 = ThreadLock("java.lang.Object", 2)
    root = ThreadRecord(name="root", status=ThreadStatus.RUNNABLE, acquired_monitors=(Monitor(l1, 0),))
    x = ThreadRecord(name="x", status=ThreadStatus.BLOCKED, acquired_monitors=(Monitor(l2, 1),), waiting_to_lock=l1)
    # Inconsistent dump: y claims to hold l1 as well
    y = ThreadRecord(name="y", status=ThreadStatus.BLOCKED, acquired_monitors=(Monitor(l1, 1),), waiting_to_lock=l2)
    runtime = RuntimeSnapshot([root, x, y])

    result = runtime.query(BlockingTree())

    assert result.trees == frozenset({Tree(root, [Tree(x, [Tree(y)])])})


def _blocked(name, holds, waits_to) -> ThreadRecord:
    return ThreadRecord(
        name=name,
        status=ThreadStatus.BLOCKED,
        acquired_monitors=tuple(Monitor(lock, 1) for lock in holds),
        waiting_to_lock=waits_to,
    )


def test_chain_below_deadlock_is_kept():
    l1, l2, l3 = (ThreadLock("java.lang.Object", i) for i in (1, 2, 3))
    x = _blocked("x", [l1], l2)
    y = _blocked("y", [l2], l1)
    a = _blocked("a", [l3], l1)
    b = _blocked("b", [], l3)
    runtime = RuntimeSnapshot([x, y, a, b])

    result = runtime.threads.where(name_is("b")).query(BlockingTree())

    assert result.trees == frozenset({Tree(a, [Tree(b)])})
    # Deadlocked threads are reported by Deadlocks, not as roots
    assert set(runtime.query(BlockingTree()).roots()) == {a}


def test_chain_below_waiting_holder_is_kept():
    l3 = ThreadLock("java.lang.Object", 3)
    l4 = ThreadLock("java.lang.Object", 4)
    l5 = ThreadLock("java.lang.Object", 5)
    w = ThreadRecord(
        name="w",
        status=ThreadStatus.IN_OBJECT_WAIT,
        acquired_monitors=(Monitor(l4, 2),),
        waiting_on_lock=l5,
    )
    b = _blocked("b", [l3], l4)
    c = _blocked("c", [], l3)
    runtime = RuntimeSnapshot([w, b, c])

    result = runtime.query(BlockingTree())

    assert result.trees == frozenset({Tree(b, [Tree(c)])})
    assert set(result.roots()) == {b}
