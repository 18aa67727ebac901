import asyncio

from services.batch import BatchOrchestrator, partition


def test_partition():
    assert partition(list("abcde"), 2) == [["a", "b"], ["c", "d"], ["e"]]
    assert partition(["a"], 0) == [["a"]]
    assert partition([], 3) == []


def test_failure_is_isolated_and_order_kept():
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    async def op(symbol):
        if symbol == "BAD":
            raise RuntimeError("network down")
        await asyncio.sleep(0)
        return symbol.lower()

    orchestrator = BatchOrchestrator(sleep=fake_sleep)
    results = asyncio.run(orchestrator.fetch_all(["A", "B", "BAD", "D", "E"], op, 2, 1.5))

    assert [r.symbol for r in results] == ["A", "B", "BAD", "D", "E"]
    assert [r.value_or("") for r in results] == ["a", "b", "", "d", "e"]
    assert not results[2].ok
    assert isinstance(results[2].error, RuntimeError)
    assert all(r.ok for i, r in enumerate(results) if i != 2)
    # Three groups, so two pauses and none after the last group.
    assert sleeps == [1.5, 1.5]


def test_group_runs_concurrently_and_groups_run_serially():
    events = []

    async def op(symbol):
        events.append(("start", symbol))
        await asyncio.sleep(0)
        events.append(("end", symbol))
        return symbol

    orchestrator = BatchOrchestrator()
    asyncio.run(orchestrator.fetch_all(["A", "B", "C"], op, 2, 0))

    assert events[:2] == [("start", "A"), ("start", "B")]
    start_c = events.index(("start", "C"))
    assert start_c > events.index(("end", "A"))
    assert start_c > events.index(("end", "B"))


def test_iter_batches_yields_each_group():
    async def op(symbol):
        return len(symbol)

    async def collect():
        out = []
        async for group in BatchOrchestrator().iter_batches(["A", "BB", "CCC"], op, 2, 0):
            out.append([r.value for r in group])
        return out

    assert asyncio.run(collect()) == [[1, 2], [3]]


def test_timeout_marks_slot_failed():
    async def op(symbol):
        if symbol == "SLOW":
            await asyncio.sleep(10)
        return 1

    orchestrator = BatchOrchestrator(timeout=0.05)
    results = asyncio.run(orchestrator.fetch_all(["SLOW", "FAST"], op, 2, 0))
    assert not results[0].ok
    assert isinstance(results[0].error, asyncio.TimeoutError)
    assert results[1].value == 1


def test_retry_with_backoff():
    sleeps = []
    attempts = {"n": 0}

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    async def op(symbol):
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise RuntimeError("flaky")
        return "ok"

    orchestrator = BatchOrchestrator(retries=2, retry_base=0.1, retry_cap=1.0, sleep=fake_sleep)
    results = asyncio.run(orchestrator.fetch_all(["A"], op, 5, 0))
    assert results[0].value == "ok"
    assert len(sleeps) == 2
    assert 0.1 <= sleeps[0] <= 0.12
    assert 0.2 <= sleeps[1] <= 0.24


def test_no_retry_by_default():
    calls = []

    async def op(symbol):
        calls.append(symbol)
        raise ValueError("bad payload")

    results = asyncio.run(BatchOrchestrator().fetch_all(["A"], op, 1, 0))
    assert calls == ["A"]
    assert results[0].value_or([]) == []
