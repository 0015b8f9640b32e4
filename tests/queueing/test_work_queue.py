import asyncio

import pytest

from koncile._core.reactor.queueing import WorkQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def queue(clock):
    return WorkQueue(clock=clock)


async def dequeue_now(queue: WorkQueue) -> object:
    return await asyncio.wait_for(queue.dequeue(), timeout=0.1)


async def assert_nothing_ready(queue: WorkQueue) -> None:
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(queue.dequeue(), timeout=0.05)


async def test_empty_queue(queue):
    assert len(queue) == 0
    assert 'key' not in queue
    assert not queue.in_flight
    await assert_nothing_ready(queue)


async def test_repeated_keys_are_coalesced(queue):
    queue.enqueue('key')
    queue.enqueue('key')
    queue.enqueue('key')
    assert len(queue) == 1

    key = await dequeue_now(queue)
    assert key == 'key'
    assert len(queue) == 0
    await assert_nothing_ready(queue)


async def test_distinct_keys_are_kept_in_order(queue, clock):
    queue.enqueue('key1')
    clock.now += 1
    queue.enqueue('key2')
    assert len(queue) == 2
    assert await dequeue_now(queue) == 'key1'
    assert await dequeue_now(queue) == 'key2'


async def test_delayed_key_is_not_ready_before_its_time(queue, clock):
    queue.enqueue_after('key', 10)
    assert 'key' in queue
    await assert_nothing_ready(queue)

    clock.now += 9
    await assert_nothing_ready(queue)

    clock.now += 1
    assert await dequeue_now(queue) == 'key'


async def test_earlier_request_wins_over_later_one(queue):
    queue.enqueue_after('key', 10)
    queue.enqueue('key')
    assert len(queue) == 1
    assert await dequeue_now(queue) == 'key'
    await assert_nothing_ready(queue)


async def test_later_request_does_not_postpone_earlier_one(queue):
    queue.enqueue('key')
    queue.enqueue_after('key', 10)
    assert len(queue) == 1
    assert await dequeue_now(queue) == 'key'
    await assert_nothing_ready(queue)


async def test_negative_delays_are_immediate(queue):
    queue.enqueue_after('key', -5)
    assert await dequeue_now(queue) == 'key'


async def test_in_flight_key_is_not_given_out_again(queue):
    queue.enqueue('key')
    key = await dequeue_now(queue)
    assert queue.in_flight == {'key'}

    queue.enqueue('key')
    assert 'key' not in queue
    assert len(queue) == 0
    await assert_nothing_ready(queue)

    queue.done(key)
    assert 'key' in queue
    assert not queue.in_flight
    assert await dequeue_now(queue) == 'key'


async def test_in_flight_key_is_readmitted_at_earliest_requested_time(queue, clock):
    queue.enqueue('key')
    key = await dequeue_now(queue)
    queue.enqueue_after('key', 10)
    queue.enqueue_after('key', 5)
    queue.enqueue_after('key', 20)
    queue.done(key)

    clock.now += 4
    await assert_nothing_ready(queue)
    clock.now += 1
    assert await dequeue_now(queue) == 'key'


async def test_done_key_without_requests_is_forgotten(queue):
    queue.enqueue('key')
    key = await dequeue_now(queue)
    queue.done(key)
    assert len(queue) == 0
    assert not queue.in_flight
    assert not queue._records
    await assert_nothing_ready(queue)


async def test_done_for_unknown_key_fails(queue):
    with pytest.raises(ValueError, match=r"not in flight"):
        queue.done('key')


async def test_done_for_pending_key_fails(queue):
    queue.enqueue('key')
    with pytest.raises(ValueError, match=r"not in flight"):
        queue.done('key')


async def test_other_keys_are_given_out_while_one_is_in_flight(queue):
    queue.enqueue('key1')
    queue.enqueue('key2')
    key1 = await dequeue_now(queue)
    key2 = await dequeue_now(queue)
    assert {key1, key2} == {'key1', 'key2'}
    assert queue.in_flight == {'key1', 'key2'}


async def test_waiting_dequeuer_is_woken_up_by_enqueueing(queue):
    task = asyncio.create_task(queue.dequeue())
    await asyncio.sleep(0.01)
    assert not task.done()

    queue.enqueue('key')
    key = await asyncio.wait_for(task, timeout=0.1)
    assert key == 'key'


async def test_waiting_dequeuer_is_woken_up_by_rescheduling_to_earlier_time(queue):
    queue.enqueue_after('key', 100)
    task = asyncio.create_task(queue.dequeue())
    await asyncio.sleep(0.01)
    assert not task.done()

    queue.enqueue('key')
    key = await asyncio.wait_for(task, timeout=0.1)
    assert key == 'key'


async def test_concurrent_dequeuers_get_distinct_keys(queue):
    tasks = [asyncio.create_task(queue.dequeue()) for _ in range(3)]
    await asyncio.sleep(0.01)
    queue.enqueue('key1')
    queue.enqueue('key2')
    queue.enqueue('key3')
    keys = await asyncio.wait_for(asyncio.gather(*tasks), timeout=0.1)
    assert sorted(keys) == ['key1', 'key2', 'key3']


async def test_delays_in_real_time():
    queue: WorkQueue[str] = WorkQueue()
    loop = asyncio.get_running_loop()
    queue.enqueue_after('key', 0.05)
    started = loop.time()
    key = await asyncio.wait_for(queue.dequeue(), timeout=1.0)
    assert key == 'key'
    assert loop.time() - started >= 0.04


async def test_repr_shows_counts(queue):
    queue.enqueue('key1')
    queue.enqueue('key2')
    await dequeue_now(queue)
    assert repr(queue) == '<WorkQueue: 1 pending, 1 in flight>'
