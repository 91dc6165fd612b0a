import os
import asyncio
from collections import namedtuple
from inspect import iscoroutinefunction
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Sequence, Set, TypeVar

from case_dataloader.exceptions import BatchLoadResultError
from case_dataloader.utils.logger import get_logger

logger = get_logger(__name__)

K = TypeVar("K")
V = TypeVar("V")

PendingRequest = namedtuple('PendingRequest', 'key,future')


class BatchLoader(Generic[K, V]):
    """
    Coalesce `load(key)` calls issued within one turn of the event loop into
    a single `batch_load_fn(keys)` call.

    usage:

        class UserLoader(BatchLoader):
            async def batch_load_fn(self, keys):
                rows = await query_users(keys)
                return list(build_object(rows, keys, lambda u: str(u.id)))

        loader = UserLoader()
        a, b = await asyncio.gather(loader.load(1), loader.load(2))

    - keys are normalized by `get_cache_key` (str by default) before they are
      compared, cached or handed to `batch_load_fn`
    - `batch_load_fn` must return one value per key, in the same order
    - only successful batches are cached, a failed batch rejects every waiting
      future and leaves no trace in the cache

    one instance is meant to live for one request, it is not a global cache.
    """

    def __init__(
            self,
            batch_load_fn: Optional[Callable[[List[Hashable]], Any]] = None,
            *,
            get_cache_key: Optional[Callable[[K], Hashable]] = None,
            name: Optional[str] = None,
            debug: bool = False):

        if batch_load_fn is not None:
            self.batch_load_fn = batch_load_fn

        if not iscoroutinefunction(getattr(self, 'batch_load_fn', None)):
            raise TypeError(
                f'{self.__class__.__name__} requires an async batch_load_fn which accepts '
                f'List<key> and returns List<value>, got: {batch_load_fn!r}')

        self.get_cache_key = get_cache_key or str
        self.name = name or self.__class__.__name__
        self.debug = debug or os.getenv("CASE_DATALOADER_DEBUG", "false").lower() == "true"
        self.dispatch_count = 0

        self._cache: Dict[Hashable, V] = {}
        self._queue: List[PendingRequest] = []
        self._scheduled = False
        self._tasks: Set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(name={self.name}, cached={len(self._cache)}, queued={len(self._queue)})'

    def load(self, key: Optional[K]) -> 'asyncio.Future[Optional[V]]':
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        if key is None:
            future.set_result(None)
            return future

        cache_key = self.get_cache_key(key)
        if cache_key in self._cache:
            future.set_result(self._cache[cache_key])
            return future

        self._queue.append(PendingRequest(key=cache_key, future=future))
        if not self._scheduled:
            self._scheduled = True
            loop.call_soon(self._flush)
        return future

    def clear(self) -> 'BatchLoader[K, V]':
        """
        drop every cached value, futures already waiting are not affected.
        """
        self._cache.clear()
        return self

    def prime(self, key: K, value: V) -> 'BatchLoader[K, V]':
        """
        put a value the caller already holds into the cache, existing entries win.
        """
        if key is None:
            return self
        cache_key = self.get_cache_key(key)
        if cache_key not in self._cache:
            self._cache[cache_key] = self.validate_value(value)
        return self

    def validate_value(self, value: Any) -> Any:
        """override in subclasses to enforce the shape of one result slot"""
        return value

    def _flush(self) -> None:
        queue = self._queue
        self._queue = []
        self._scheduled = False

        keys: List[Hashable] = []
        pending: Dict[Hashable, List[asyncio.Future]] = {}

        for request in queue:
            if request.key in self._cache:
                _resolve(request.future, self._cache[request.key])
                continue

            if request.key not in pending:
                pending[request.key] = []
                keys.append(request.key)
            pending[request.key].append(request.future)

        if not keys:
            return

        self.dispatch_count += 1
        task = asyncio.ensure_future(self._dispatch(keys, pending))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, keys: List[Hashable], pending: Dict[Hashable, List[asyncio.Future]]) -> None:
        if self.debug:
            logger.debug(f'{self.name}: dispatch #{self.dispatch_count} with {len(keys)} key(s)')

        try:
            values = self._check_results(keys, await self.batch_load_fn(keys))
        except Exception as e:
            if self.debug:
                logger.debug(f'{self.name}: batch of {len(keys)} key(s) failed: {e!r}')
            for key in keys:
                for future in pending[key]:
                    _reject(future, e)
            return
        except BaseException as e:
            # cancellation or interpreter exit, no caller may be left waiting
            for key in keys:
                for future in pending[key]:
                    if isinstance(e, asyncio.CancelledError):
                        future.cancel()
                    else:
                        _reject(future, e)
            raise

        for key, value in zip(keys, values):
            self._cache[key] = value
            for future in pending[key]:
                _resolve(future, value)

    def _check_results(self, keys: Sequence[Hashable], values: Any) -> List[Any]:
        if values is None:
            raise BatchLoadResultError(f'{self.name}: batch_load_fn returned None')

        values = list(values)
        if len(values) != len(keys):
            raise BatchLoadResultError(
                f'{self.name}: batch_load_fn must return a list of the same length as the keys, '
                f'expected {len(keys)} values, received {len(values)}')

        return [self.validate_value(v) for v in values]


class SingleLoader(BatchLoader[K, V]):
    """
    one optional value per key, `None` stands for "no such record".
    """
    pass


class ListLoader(BatchLoader[K, V]):
    """
    one list of rows per key, a key without rows maps to `[]`, never `None`.
    """

    def validate_value(self, value: Any) -> List[Any]:
        if isinstance(value, list):
            return value
        if isinstance(value, tuple):
            return list(value)
        raise BatchLoadResultError(
            f'{self.name}: every value returned by a list loader must be a list, got {type(value).__name__}')


def _resolve(future: asyncio.Future, value: Any) -> None:
    if not future.done():  # caller may have cancelled
        future.set_result(value)


def _reject(future: asyncio.Future, error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)
