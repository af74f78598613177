import pytest

from thread_analyzer_mcp.model import Monitor, ThreadLock, ThreadRecord, ThreadStatus
from thread_analyzer_mcp.runtime import RuntimeSnapshot, ThreadSet, name_contains, name_is

L1 = ThreadLock("java.lang.Object", 1)
L2 = ThreadLock("java.lang.Object", 2)
SYNC = ThreadLock("java.util.concurrent.locks.ReentrantLock$NonfairSync", 3)


def _thread(name, holds=(), waits_to=None, synchronizers=()) -> ThreadRecord:
    return ThreadRecord(
        name=name,
        status=ThreadStatus.BLOCKED if waits_to else ThreadStatus.RUNNABLE,
        acquired_monitors=tuple(Monitor(lock, 0) for lock in holds),
        acquired_synchronizers=tuple(synchronizers),
        waiting_to_lock=waits_to,
    )


OWNER = _thread("owner", holds=(L1,))
WAITER = _thread("waiter", holds=(L2,), waits_to=L1)
SECOND_WAITER = _thread("second-waiter", waits_to=L1)
TAIL = _thread("tail", waits_to=L2)
IDLE = _thread("idle", synchronizers=(SYNC,))


@pytest.fixture
def runtime():
    return RuntimeSnapshot([OWNER, WAITER, SECOND_WAITER, TAIL, IDLE], ["Full thread dump"])


def test_blocking_thread(runtime):
    assert runtime.blocking_thread(WAITER) == OWNER
    assert runtime.blocking_thread(TAIL) == WAITER
    assert runtime.blocking_thread(OWNER) is None
    assert runtime.blocking_thread(IDLE) is None


def test_blocking_thread_ignores_own_lock():
    reentering = _thread("reentering", holds=(L1,), waits_to=L1)
    runtime = RuntimeSnapshot([reentering])
    assert runtime.blocking_thread(reentering) is None


def test_blocked_threads_in_snapshot_order(runtime):
    assert list(runtime.blocked_threads(OWNER)) == [WAITER, SECOND_WAITER]
    assert list(runtime.blocked_threads(WAITER)) == [TAIL]
    assert len(runtime.blocked_threads(IDLE)) == 0


def test_duplicate_threads_collapse():
    runtime = RuntimeSnapshot([OWNER, OWNER, WAITER])
    assert list(runtime.threads) == [OWNER, WAITER]


def test_thread_set_where_and_only_thread(runtime):
    assert runtime.threads.where(name_is("tail")).only_thread() == TAIL
    assert [t.name for t in runtime.threads.where(name_contains("waiter$"))] == ["waiter", "second-waiter"]

    with pytest.raises(ValueError):
        runtime.threads.only_thread()
    with pytest.raises(ValueError):
        runtime.threads.where(name_is("missing")).only_thread()


def test_thread_set_relations(runtime):
    waiters = runtime.threads.where(name_contains("waiter"))
    assert list(waiters.blocking_threads()) == [OWNER]
    assert list(runtime.threads.where(name_is("owner")).blocked_threads()) == [WAITER, SECOND_WAITER]
    assert waiters.blocking_threads().runtime is runtime


def test_thread_set_operators_keep_runtime(runtime):
    waiters = runtime.threads.where(name_contains("waiter"))
    others = runtime.threads - waiters

    assert isinstance(others, ThreadSet)
    assert others.runtime is runtime
    assert list(others) == [OWNER, TAIL, IDLE]
    assert list(waiters | others) == [WAITER, SECOND_WAITER, OWNER, TAIL, IDLE]
    assert list(runtime.threads & waiters) == [WAITER, SECOND_WAITER]
    assert len(waiters ^ runtime.threads) == 3
    assert waiters <= runtime.threads
    assert WAITER in waiters
    assert OWNER not in waiters


@pytest.mark.parametrize("method,args", [("add", (OWNER,)), ("discard", (OWNER,)), ("remove", (OWNER,)), ("clear", ()), ("pop", ())])
def test_thread_set_is_read_only(runtime, method, args):
    threads = runtime.threads
    with pytest.raises(TypeError):
        getattr(threads, method)(*args)
    assert len(threads) == 5


def test_equality(runtime):
    same = RuntimeSnapshot([OWNER, WAITER, SECOND_WAITER, TAIL, IDLE], ["Full thread dump"])
    assert runtime == same
    assert hash(runtime) == hash(same)
    assert runtime != RuntimeSnapshot([OWNER], ["Full thread dump"])
    assert runtime != RuntimeSnapshot([OWNER, WAITER, SECOND_WAITER, TAIL, IDLE])

    assert runtime.threads == runtime.threads
    # Sets of distinct snapshots never compare equal
    assert runtime.threads != same.threads
    assert runtime.threads.where(name_is("owner")) != runtime.threads


def test_rendering(runtime):
    text = str(runtime)
    assert text.startswith("Full thread dump\n\n\"owner\"")
    assert text.count("java.lang.Thread.State:") == 5
    assert str(runtime.threads.where(name_is("idle"))).endswith("(a java.util.concurrent.locks.ReentrantLock$NonfairSync)\n\n")


def test_query_delegation(runtime):
    class Names:
        def query(self, threads):
            return [t.name for t in threads]

    assert runtime.query(Names()) == ["owner", "waiter", "second-waiter", "tail", "idle"]
    assert runtime.threads.where(name_is("tail")).query(Names()) == ["tail"]
