import asyncio

import pytest
from solders.pubkey import Pubkey

from solsync.account_cache import AccountStateCache
from solsync.models import AccountSnapshot, LogUpdate

from conftest import FakeLedgerClient


def snap(key, slot, data=b"\x01", endpoint="ws"):
    return AccountSnapshot(key=key, data=data, owner=Pubkey.default(), slot=slot, endpoint=endpoint)


def test_ingest_slot_scenario(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    seen = []
    cache.stream_for(key, auto_subscribe=False, fetch_initial=False).subscribe(seen.append)

    results = [
        cache.ingest(snap(key, 5, b"five")),
        cache.ingest(snap(key, 3, b"three")),
        cache.ingest(snap(key, 9, b"first-nine")),
        cache.ingest(snap(key, 9, b"second-nine")),
    ]

    assert results == [True, False, True, False]
    assert [s.slot for s in seen] == [5, 9]
    assert cache.get(key).data == b"first-nine"


def test_ingest_drops_unknown_slot(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    assert not cache.ingest(snap(key, 0))
    assert cache.get(key) is None
    assert not cache.is_resolved(key)


def test_stream_replays_latest_snapshot(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    cache.ingest(snap(key, 4))
    seen = []
    cache.stream_for(key, auto_subscribe=False).subscribe(seen.append)
    assert [s.slot for s in seen] == [4]
    # already resolved through ingest, nothing to fetch
    assert cache.pending_resolves == []


@pytest.mark.asyncio
async def test_one_subscription_per_pair(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    first = cache.stream_for(key, fetch_initial=False)
    second = cache.stream_for(str(key), fetch_initial=False)
    assert first is second
    assert len(cache.pending_subscriptions) == 1

    assert await cache.run_subscribe_once()
    assert not await cache.run_subscribe_once()
    cache.stream_for(key, fetch_initial=False)
    assert not await cache.run_subscribe_once()
    assert len(client.subscriptions) == 1
    assert cache.is_subscribed(key)


@pytest.mark.asyncio
async def test_subscription_per_endpoint(client):
    other = FakeLedgerClient("http://other-rpc")
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    cache.stream_for(key, fetch_initial=False)
    cache.stream_for(key, other, fetch_initial=False)
    assert await cache.run_subscribe_once()
    assert await cache.run_subscribe_once()
    assert len(client.subscriptions) == 1
    assert len(other.subscriptions) == 1


@pytest.mark.asyncio
async def test_subscribe_ticks_register_one_pair_each(client):
    cache = AccountStateCache(client)
    keys = [Pubkey.new_unique() for _ in range(3)]
    for key in keys:
        cache.stream_for(key, fetch_initial=False)
    await cache.run_subscribe_once()
    assert [ks for ks, _ in client.subscriptions] == [str(keys[0])]
    await cache.run_subscribe_once()
    await cache.run_subscribe_once()
    assert [ks for ks, _ in client.subscriptions] == [str(k) for k in keys]


@pytest.mark.asyncio
async def test_failed_subscription_is_retried_on_next_request(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    client.fail_subscriptions = 1

    cache.stream_for(key, fetch_initial=False)
    assert not await cache.run_subscribe_once()
    assert not cache.is_subscribed(key)
    assert cache.pending_subscriptions == []

    cache.stream_for(key, fetch_initial=False)
    assert await cache.run_subscribe_once()
    assert cache.is_subscribed(key)


@pytest.mark.asyncio
async def test_subscription_callback_feeds_cache(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    seen = []
    cache.stream_for(key, fetch_initial=False).subscribe(seen.append)
    await cache.run_subscribe_once()

    client.push(snap(key, 7))
    client.push(snap(key, 6))
    assert [s.slot for s in seen] == [7]
    assert cache.get(key).slot == 7


@pytest.mark.asyncio
async def test_resolve_respects_batch_ceiling(client):
    cache = AccountStateCache(client, batch_size=2)
    keys = [Pubkey.new_unique() for _ in range(3)]
    for key in keys:
        client.set_account(key, b"data")
        cache.stream_for(key, auto_subscribe=False)

    assert await cache.run_resolve_once() == 2
    assert await cache.run_resolve_once() == 1
    assert await cache.run_resolve_once() == 0
    assert client.batch_calls == [[str(keys[0]), str(keys[1])], [str(keys[2])]]
    assert all(cache.get(k).data == b"data" for k in keys)


@pytest.mark.asyncio
async def test_absent_account_is_marked_resolved(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    seen = []
    cache.stream_for(key, auto_subscribe=False).subscribe(seen.append)
    await cache.run_resolve_once()

    assert len(seen) == 1
    assert not seen[0].exists
    assert cache.is_resolved(key)
    cache.stream_for(key, auto_subscribe=False)
    assert cache.pending_resolves == []


@pytest.mark.asyncio
async def test_key_missing_from_response_is_not_retried(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    client.omit.add(str(key))
    cache.stream_for(key, auto_subscribe=False)
    await cache.run_resolve_once()

    assert cache.get(key) is None
    assert cache.is_resolved(key)
    cache.stream_for(key, auto_subscribe=False)
    assert await cache.run_resolve_once() == 0


@pytest.mark.asyncio
async def test_failed_batch_is_dropped(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    client.fail_batches = 1
    cache.stream_for(key, auto_subscribe=False)

    assert await cache.run_resolve_once() == 0
    assert not cache.is_resolved(key)
    assert cache.pending_resolves == []

    cache.stream_for(key, auto_subscribe=False)
    assert await cache.run_resolve_once() == 1
    assert cache.is_resolved(key)


@pytest.mark.asyncio
async def test_forced_resolution(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    client.set_account(key, b"v1", slot=5)
    cache.stream_for(key, auto_subscribe=False)
    await cache.run_resolve_once()

    assert cache.request_resolve([key]) == 0
    assert cache.request_resolve([key], force=True) == 1
    client.set_account(key, b"v2", slot=6)
    await cache.run_resolve_once()
    assert cache.get(key).data == b"v2"


@pytest.mark.asyncio
async def test_force_upgrades_queued_entry(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    cache.stream_for(key, auto_subscribe=False)
    # resolved by a live update before the batch runs
    cache.ingest(snap(key, 3))
    assert cache.request_resolve([key], force=True) == 0

    client.set_account(key, b"fresh", slot=8)
    assert await cache.run_resolve_once() == 1
    assert cache.get(key).slot == 8


@pytest.mark.asyncio
async def test_force_is_not_starved_by_batch_in_flight(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    client.set_account(key, b"old", slot=5)
    client.batch_gate = asyncio.Event()
    cache.stream_for(key, auto_subscribe=False)

    batch = asyncio.create_task(cache.run_resolve_once())
    while not client.batch_calls:
        await asyncio.sleep(0)

    assert cache.request_resolve([key]) == 0
    assert cache.request_resolve([key], force=True) == 1

    client.batch_gate.set()
    await batch
    client.set_account(key, b"new", slot=6)
    assert await cache.run_resolve_once() == 1
    assert cache.get(key).data == b"new"


def test_stream_for_many_waits_for_all_keys(client):
    cache = AccountStateCache(client)
    a, b = Pubkey.new_unique(), Pubkey.new_unique()
    combined = cache.stream_for_many([a, b], auto_subscribe=False, fetch_initial=False)
    seen = []
    combined.subscribe(seen.append)

    cache.ingest(snap(a, 1))
    cache.ingest(snap(a, 2))
    assert seen == []
    cache.ingest(snap(b, 1))
    assert len(seen) == 1
    assert {k: v.slot for k, v in seen[0].items()} == {str(a): 2, str(b): 1}
    cache.ingest(snap(b, 5))
    assert {k: v.slot for k, v in seen[-1].items()} == {str(a): 2, str(b): 5}
    assert combined.keys == [str(a), str(b)]


@pytest.mark.asyncio
async def test_resubscribe_all_only_requeues_missing_pairs(client):
    cache = AccountStateCache(client)
    keys = [Pubkey.new_unique() for _ in range(2)]
    for key in keys:
        cache.stream_for(key, fetch_initial=False)
    client.fail_subscriptions = 1
    await cache.run_subscribe_once()
    await cache.run_subscribe_once()
    assert not cache.is_subscribed(keys[0])
    assert cache.is_subscribed(keys[1])

    assert cache.resubscribe_all() == 1
    await cache.run_subscribe_once()
    assert cache.resubscribe_all() == 0
    await cache.run_subscribe_once()

    assert sorted(ks for ks, _ in client.subscriptions) == sorted(str(k) for k in keys)


@pytest.mark.asyncio
async def test_background_tasks_and_polling(client):
    cache = AccountStateCache(client, resolve_interval=0.01, subscribe_interval=0.01)
    key = Pubkey.new_unique()
    client.set_account(key, b"v", slot=1)
    cache.stream_for(key, poll_interval=0.02)

    async with cache:
        assert cache.running
        await asyncio.sleep(0.2)
    assert not cache.running

    assert cache.is_subscribed(key)
    assert cache.get(key).data == b"v"
    # initial resolution plus at least one forced poll
    assert len(client.batch_calls) >= 2

    calls = len(client.batch_calls)
    await asyncio.sleep(0.05)
    assert len(client.batch_calls) == calls


def test_discarded_stream_for_many_leaves_key_stream_clean(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    for _ in range(100):
        cache.stream_for_many([key], auto_subscribe=False, fetch_initial=False)
    stream = cache.stream_for(key, auto_subscribe=False, fetch_initial=False)
    assert stream.subscriber_count == 0

    combined = cache.stream_for_many([key], auto_subscribe=False, fetch_initial=False)
    unsub = combined.subscribe(lambda value: None)
    assert stream.subscriber_count == 1
    unsub()
    assert stream.subscriber_count == 0


def log_update(target, slot, signature="sig"):
    return LogUpdate(target=target, signature=signature, logs=["Program log: hi"], slot=slot)


@pytest.mark.asyncio
async def test_log_stream_subscribes_once_and_replays(client):
    cache = AccountStateCache(client)
    program = Pubkey.new_unique()
    stream = cache.log_stream_for(program)
    assert cache.log_stream_for(str(program)) is stream
    assert len(cache.pending_subscriptions) == 1

    assert await cache.run_subscribe_once()
    assert not await cache.run_subscribe_once()
    assert cache.is_log_subscribed(program)
    assert client.log_subscriptions[0][0] == str(program)

    client.push_logs(log_update(str(program), 7, "a"))
    client.push_logs(log_update(str(program), 7, "b"))
    late = []
    stream.subscribe(late.append)
    assert [u.signature for u in late] == ["b"]
    assert cache.log_stream_for(program) is stream
    assert len(client.log_subscriptions) == 1


@pytest.mark.asyncio
async def test_log_stream_for_all_transactions(client):
    cache = AccountStateCache(client)
    stream = cache.log_stream_for()
    assert cache.log_stream_for("all") is stream
    await cache.run_subscribe_once()
    assert client.log_subscriptions[0][0] is None

    seen = []
    stream.subscribe(seen.append)
    client.push_logs(log_update("all", 3))
    assert [u.slot for u in seen] == [3]


@pytest.mark.asyncio
async def test_log_and_account_feeds_are_separate_pairs(client):
    cache = AccountStateCache(client)
    key = Pubkey.new_unique()
    cache.stream_for(key, fetch_initial=False)
    cache.log_stream_for(key)
    assert len(cache.pending_subscriptions) == 2

    await cache.run_subscribe_once()
    await cache.run_subscribe_once()
    assert cache.is_subscribed(key)
    assert cache.is_log_subscribed(key)
    assert len(client.subscriptions) == 1
    assert len(client.log_subscriptions) == 1


@pytest.mark.asyncio
async def test_failed_log_subscription_is_retried_on_next_request(client):
    cache = AccountStateCache(client)
    client.fail_subscriptions = 1
    cache.log_stream_for()
    assert not await cache.run_subscribe_once()
    assert not cache.is_log_subscribed()

    cache.log_stream_for()
    assert await cache.run_subscribe_once()
    assert cache.is_log_subscribed()


@pytest.mark.asyncio
async def test_drop_log_stream(client):
    cache = AccountStateCache(client)
    program = Pubkey.new_unique()
    stream = cache.log_stream_for(program)
    await cache.run_subscribe_once()
    client.push_logs(log_update(str(program), 4))

    assert await cache.drop_log_stream(program)
    assert client.unsubscribed == [1001]
    assert not cache.is_log_subscribed(program)
    assert stream.latest.slot == 4
    assert not await cache.drop_log_stream(program)

    cache.log_stream_for(program)
    assert await cache.drop_log_stream(program)
    assert cache.pending_subscriptions == []
    assert client.unsubscribed == [1001]
