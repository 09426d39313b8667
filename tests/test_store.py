import pytest

from ucp_core.errors import StoreUnavailableError, VersionConflictError
from ucp_core.models import StockLevel
from ucp_core.store import (
    MUST_NOT_EXIST,
    InMemoryLedgerStore,
    Record,
    RetryingLedgerStore,
    SqlLedgerStore,
    create_store,
)


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        store = InMemoryLedgerStore()
    else:
        store = SqlLedgerStore(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield store
    await store.close()


async def test_put_assigns_increasing_versions(store):
    assert await store.put("ns", "a", {"n": 1}) == 1
    assert await store.put("ns", "a", {"n": 2}) == 2

    record = await store.get("ns", "a")
    assert record.version == 2
    assert record.value == {"n": 2}


async def test_create_only_rejects_existing_key(store):
    await store.put("ns", "a", {"n": 1}, expected_version=MUST_NOT_EXIST)

    with pytest.raises(VersionConflictError):
        await store.put("ns", "a", {"n": 2}, expected_version=MUST_NOT_EXIST)

    assert (await store.get("ns", "a")).value == {"n": 1}


async def test_stale_version_is_rejected(store):
    await store.put("ns", "a", {"n": 1})
    await store.put("ns", "a", {"n": 2}, expected_version=1)

    with pytest.raises(VersionConflictError):
        await store.put("ns", "a", {"n": 3}, expected_version=1)


async def test_scan_is_per_namespace(store):
    await store.put("one", "a", {"n": 1})
    await store.put("one", "b", {"n": 2})
    await store.put("two", "c", {"n": 3})

    keys = sorted(r.key for r in await store.scan("one"))
    assert keys == ["a", "b"]


async def test_move_and_delete(store):
    await store.put("queue", "evt", {"n": 1})
    await store.move("queue", "dead", "evt")

    assert await store.get("queue", "evt") is None
    assert (await store.get("dead", "evt")).value == {"n": 1}

    await store.delete("dead", "evt")
    assert await store.get("dead", "evt") is None


async def test_streams_are_append_only_and_ordered(store):
    await store.append("audit", {"i": 1})
    await store.append("audit", {"i": 2})
    await store.append("other", {"i": 3})

    assert await store.read_stream("audit") == [{"i": 1}, {"i": 2}]


async def test_load_and_save_models(store):
    await store.save("stock", "rose", StockLevel(sku="rose", on_hand=4), expected_version=MUST_NOT_EXIST)

    stock, version = await store.load("stock", "rose", StockLevel)
    assert stock.available == 4
    assert version == 1
    assert await store.load("stock", "missing", StockLevel) is None


async def test_in_memory_store_copies_values():
    store = InMemoryLedgerStore()
    value = {"items": [1]}
    await store.put("ns", "a", value)
    value["items"].append(2)

    record = await store.get("ns", "a")
    record.value["items"].append(3)
    assert (await store.get("ns", "a")).value == {"items": [1]}


async def test_retrying_store_retries_transient_failures(mocker):
    inner = mocker.Mock()
    inner.get = mocker.AsyncMock(side_effect=[
        StoreUnavailableError("down"),
        StoreUnavailableError("down"),
        Record("a", 1, {"n": 1}),
    ])
    delays = []

    async def sleep(delay):
        delays.append(delay)

    store = RetryingLedgerStore(inner, attempts=3, base_delay=0.1, sleep=sleep)
    record = await store.get("ns", "a")

    assert record.value == {"n": 1}
    assert delays == [0.1, 0.2]


async def test_retrying_store_surfaces_exhaustion(mocker):
    inner = mocker.Mock()
    inner.put = mocker.AsyncMock(side_effect=StoreUnavailableError("down"))
    inner.get = mocker.AsyncMock(return_value=None)

    async def sleep(delay):
        pass

    store = RetryingLedgerStore(inner, attempts=2, base_delay=0.1, sleep=sleep)
    with pytest.raises(StoreUnavailableError) as exc_info:
        await store.put("ns", "a", {})

    assert exc_info.value.retryable
    assert inner.put.await_count == 2


async def test_retrying_store_does_not_retry_conflicts(mocker):
    inner = mocker.Mock()
    inner.put = mocker.AsyncMock(side_effect=VersionConflictError("ns", "a", 1, 2))

    store = RetryingLedgerStore(inner, attempts=3)
    with pytest.raises(VersionConflictError):
        await store.put("ns", "a", {}, expected_version=1)
    assert inner.put.await_count == 1



async def test_retried_put_returns_version_of_committed_write(mocker):
    inner = InMemoryLedgerStore()
    await inner.put("ns", "a", {"n": 1})
    real_put = inner.put

    async def commit_then_fail(*args):
        await real_put(*args)
        raise StoreUnavailableError("connection lost")

    mocker.patch.object(inner, "put", side_effect=commit_then_fail)

    async def sleep(delay):
        pass

    store = RetryingLedgerStore(inner, attempts=3, sleep=sleep)
    version = await store.put("ns", "a", {"n": 2}, expected_version=1)

    assert version == 2
    assert inner.put.await_count == 1
    assert (await inner.get("ns", "a")).value == {"n": 2}


async def test_stream_appends_are_not_retried(mocker):
    inner = mocker.Mock()
    inner.append = mocker.AsyncMock(side_effect=StoreUnavailableError("down"))

    store = RetryingLedgerStore(inner, attempts=3)
    with pytest.raises(StoreUnavailableError):
        await store.append("audit", {"outcome": "redeemed"})
    assert inner.append.await_count == 1

def test_create_store_picks_backend(tmp_path):
    assert isinstance(create_store("memory://").inner, InMemoryLedgerStore)
    assert isinstance(create_store(f"sqlite:///{tmp_path / 'x.db'}").inner, SqlLedgerStore)
