import asyncio
import logging
from collections import Counter

import pytest

from case_dataloader import BatchLoader, BatchLoadResultError


def make_loader(**kwargs):
    calls = []

    async def batch_load_fn(keys):
        calls.append(list(keys))
        return [f'value-{k}' for k in keys]

    return BatchLoader(batch_load_fn=batch_load_fn, **kwargs), calls


@pytest.mark.asyncio
async def test_same_pass_is_one_batch_with_distinct_keys():
    loader, calls = make_loader()

    a1 = loader.load('a')
    b = loader.load('b')
    a2 = loader.load('a')

    assert await asyncio.gather(a1, b, a2) == ['value-a', 'value-b', 'value-a']
    assert calls == [['a', 'b']]
    assert loader.dispatch_count == 1


@pytest.mark.asyncio
async def test_keys_keep_first_seen_order():
    loader, calls = make_loader()

    keys = ['c', 'a', 'c', 'b', 'a', 'd']
    await asyncio.gather(*[loader.load(k) for k in keys])

    assert calls == [['c', 'a', 'b', 'd']]


@pytest.mark.asyncio
async def test_results_are_matched_by_position():
    async def batch_load_fn(keys):
        table = {'k1': 'v1', 'k2': 'v2'}
        return [table[k] for k in keys]

    loader = BatchLoader(batch_load_fn=batch_load_fn)
    v2, v1 = await asyncio.gather(loader.load('k2'), loader.load('k1'))
    assert v1 == 'v1'
    assert v2 == 'v2'


@pytest.mark.asyncio
async def test_resolved_key_is_served_from_cache():
    loader, calls = make_loader()

    assert await loader.load('a') == 'value-a'
    assert await loader.load('a') == 'value-a'
    assert await asyncio.gather(loader.load('a'), loader.load('b')) == ['value-a', 'value-b']

    assert calls == [['a'], ['b']]


@pytest.mark.asyncio
async def test_cache_hit_still_returns_a_future():
    loader, _ = make_loader()
    await loader.load('a')

    future = loader.load('a')
    assert asyncio.isfuture(future)
    assert future.done()
    assert await future == 'value-a'


@pytest.mark.asyncio
async def test_none_key_short_circuits():
    loader, calls = make_loader()

    future = loader.load(None)
    assert loader._queue == []
    assert loader._scheduled is False
    assert await future is None

    assert await asyncio.gather(loader.load(None), loader.load('a')) == [None, 'value-a']
    assert calls == [['a']]


@pytest.mark.asyncio
async def test_clear_forces_a_new_dispatch():
    loader, calls = make_loader()

    await loader.load('a')
    assert loader.clear() is loader
    await loader.load('a')

    assert calls == [['a'], ['a']]


@pytest.mark.asyncio
async def test_clear_does_not_touch_pending_requests():
    loader, calls = make_loader()

    pending = loader.load('a')
    loader.clear()
    assert await pending == 'value-a'
    assert calls == [['a']]


@pytest.mark.asyncio
async def test_failed_batch_rejects_every_key_and_caches_nothing():
    counter = Counter()
    failing = {'on': True}

    async def batch_load_fn(keys):
        counter['dispatch'] += 1
        if failing['on']:
            raise ValueError('database unavailable')
        return [k.upper() for k in keys]

    loader = BatchLoader(batch_load_fn=batch_load_fn)

    results = await asyncio.gather(loader.load('a'), loader.load('b'), loader.load('a'), return_exceptions=True)
    assert all(isinstance(r, ValueError) for r in results)
    assert results[0] is results[1] is results[2]
    assert loader._cache == {}

    failing['on'] = False
    assert await loader.load('a') == 'A'
    assert counter['dispatch'] == 2


@pytest.mark.asyncio
async def test_cancelled_batch_leaves_no_caller_waiting():
    counter = Counter()

    async def batch_load_fn(keys):
        counter['dispatch'] += 1
        if counter['dispatch'] == 1:
            raise asyncio.CancelledError()
        return [k.upper() for k in keys]

    loader = BatchLoader(batch_load_fn=batch_load_fn)

    done, pending = await asyncio.wait([loader.load('a'), loader.load('b')], timeout=0.5)
    assert pending == set()
    assert all(f.cancelled() for f in done)
    assert loader._cache == {}

    assert await loader.load('a') == 'A'
    assert counter['dispatch'] == 2


@pytest.mark.asyncio
async def test_key_cached_before_flush_is_not_dispatched():
    loader, calls = make_loader()

    queued = loader.load('a')
    loader.prime('a', 'primed')

    assert await queued == 'primed'
    assert calls == []
    assert loader.dispatch_count == 0


@pytest.mark.asyncio
async def test_keys_are_normalized_to_str_by_default():
    loader, calls = make_loader()

    r = await asyncio.gather(loader.load(1), loader.load('1'), loader.load(2))
    assert r == ['value-1', 'value-1', 'value-2']
    assert calls == [['1', '2']]


@pytest.mark.asyncio
async def test_custom_cache_key():
    loader, calls = make_loader(get_cache_key=lambda k: k)

    await asyncio.gather(loader.load(1), loader.load('1'), loader.load(1))
    assert calls == [[1, '1']]


@pytest.mark.asyncio
async def test_loads_after_flush_start_a_new_window():
    calls = []
    release = asyncio.Event()

    async def batch_load_fn(keys):
        calls.append(list(keys))
        await release.wait()
        return keys

    loader = BatchLoader(batch_load_fn=batch_load_fn)

    first = loader.load('a')
    await asyncio.sleep(0)  # let the flush drain the queue
    second = loader.load('b')
    release.set()

    assert await asyncio.gather(first, second) == ['a', 'b']
    assert calls == [['a'], ['b']]
    assert loader.dispatch_count == 2


@pytest.mark.asyncio
async def test_result_length_mismatch_fails_the_batch():
    async def batch_load_fn(keys):
        return keys[:1]

    loader = BatchLoader(batch_load_fn=batch_load_fn)
    results = await asyncio.gather(loader.load('a'), loader.load('b'), return_exceptions=True)

    assert all(isinstance(r, BatchLoadResultError) for r in results)
    assert loader._cache == {}


@pytest.mark.asyncio
async def test_batch_load_fn_may_return_any_iterable():
    async def batch_load_fn(keys):
        return (k * 2 for k in keys)

    loader = BatchLoader(batch_load_fn=batch_load_fn)
    assert await asyncio.gather(loader.load('a'), loader.load('b')) == ['aa', 'bb']


@pytest.mark.asyncio
async def test_subclass_defines_batch_load_fn():
    class UpperLoader(BatchLoader):
        async def batch_load_fn(self, keys):
            return [k.upper() for k in keys]

    loader = UpperLoader()
    assert loader.name == 'UpperLoader'
    assert await loader.load('x') == 'X'


def test_sync_batch_load_fn_is_rejected():
    def batch_load_fn(keys):
        return keys

    with pytest.raises(TypeError):
        BatchLoader(batch_load_fn=batch_load_fn)

    with pytest.raises(TypeError):
        BatchLoader()


@pytest.mark.asyncio
async def test_prime_seeds_the_cache():
    loader, calls = make_loader()

    loader.prime('a', 'primed').prime('a', 'ignored').prime(None, 'ignored')
    assert await loader.load('a') == 'primed'
    assert calls == []


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_affect_others():
    loader, calls = make_loader()

    abandoned = loader.load('a')
    waiting = loader.load('a')
    abandoned.cancel()

    assert await waiting == 'value-a'
    assert calls == [['a']]
    assert await loader.load('a') == 'value-a'


@pytest.mark.asyncio
async def test_loaders_do_not_share_state():
    loader_a, calls_a = make_loader()
    loader_b, calls_b = make_loader()

    await loader_a.load('k')
    await loader_b.load('k')

    assert calls_a == [['k']]
    assert calls_b == [['k']]


@pytest.mark.asyncio
async def test_debug_logs_dispatches(caplog, monkeypatch):
    monkeypatch.setenv('CASE_DATALOADER_DEBUG', 'true')
    caplog.set_level(logging.DEBUG, logger='case_dataloader.loader')
    loader, _ = make_loader(name='letters')

    assert loader.debug is True
    await asyncio.gather(loader.load('a'), loader.load('b'))

    assert 'letters: dispatch #1 with 2 key(s)' in caplog.text
