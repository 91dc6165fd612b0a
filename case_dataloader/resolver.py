import os
import time
import asyncio
import inspect
from inspect import isclass, iscoroutine
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, TypeAdapter

from case_dataloader.depend import Depends
from case_dataloader.exceptions import (
    GlobalLoaderFieldOverlappedError,
    LoaderFieldNotProvidedError,
    ResolverTargetAttrNotFound)
from case_dataloader.loader import BatchLoader
from case_dataloader.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

PREFIX = 'resolve_'

_RESOLVE_METHODS_CACHE: Dict[Type, List[Tuple[str, str]]] = {}
_TYPE_ADAPTER_CACHE: Dict[Any, TypeAdapter] = {}


def merge_dicts(a: Dict[str, Any], b: Dict[str, Any]):
    overlap = set(a.keys()) & set(b.keys())
    if overlap:
        raise GlobalLoaderFieldOverlappedError(f'loader_params and global_loader_param have duplicated key(s): {",".join(overlap)}')
    else:
        return {**a, **b}


def get_loader_fields(kls: Type) -> List[Tuple[str, bool]]:  # field name, has default value
    """
    class level annotations of a loader class (and its loader bases)

    class FeedbackLoader(ListLoader):
        session_factory: async_sessionmaker   # required
        private: bool = False                 # optional
    """
    result: Dict[str, bool] = {}
    for base in reversed(kls.__mro__):
        if not (isclass(base) and issubclass(base, BatchLoader)):
            continue
        for k in inspect.get_annotations(base):
            result[k] = hasattr(kls, k)
    return list(result.items())


def get_resolve_methods(kls: Type[BaseModel]) -> List[Tuple[str, str]]:  # method name, target field
    if kls not in _RESOLVE_METHODS_CACHE:
        methods = []
        for name in dir(kls):
            if not name.startswith(PREFIX) or not callable(getattr(kls, name)):
                continue
            field = name[len(PREFIX):]
            if field not in kls.model_fields:
                raise ResolverTargetAttrNotFound(f'attribute {field} not found in {kls.__name__}')
            methods.append((name, field))
        _RESOLVE_METHODS_CACHE[kls] = methods
    return _RESOLVE_METHODS_CACHE[kls]


def _get_type_adapter(annotation) -> TypeAdapter:
    if annotation not in _TYPE_ADAPTER_CACHE:
        _TYPE_ADAPTER_CACHE[annotation] = TypeAdapter(annotation)
    return _TYPE_ADAPTER_CACHE[annotation]


class Resolver:
    """
    walk pydantic objects and fill every field `x` that has a `resolve_x` method.

    loaders are declared as default params and created once per Resolver,
    so all resolve methods of one pass share the same loader instances and
    their `load()` calls end up in the same batch:

        class PresenceView(BaseModel):
            id: uuid.UUID
            entities: List[PresenceEntity] = []

            def resolve_entities(self, loader=LoaderDepend(PresenceEntitiesLoader)):
                return loader.load(self.id)

        presences = await Resolver(
            global_loader_param={'session_factory': session_factory}
        ).resolve(presences)

    a Resolver is meant for one request, create a new one for the next.
    """

    def __init__(
            self,
            loader_params: Optional[Dict[Any, Dict[str, Any]]] = None,
            global_loader_param: Optional[Dict[str, Any]] = None,
            loader_instances: Optional[Dict[Any, Any]] = None,
            context: Optional[Dict[str, Any]] = None,
            debug: bool = False,
            ):

        self.debug = debug or os.getenv("CASE_DATALOADER_DEBUG", "false").lower() == "true"

        # for loader which has class attributes, you can assign the value at here
        self.loader_params = loader_params or {}

        # keys in global_loader_param are mutually exclusive with key-value pairs in loader_params
        self.global_loader_param = global_loader_param or {}

        # reuse loader instances created outside, Resolver will check `isinstance`
        if loader_instances and self._validate_loader_instance(loader_instances):
            self.loader_instances = loader_instances
        else:
            self.loader_instances = {}

        self.context = MappingProxyType(context) if context else None
        self.loader_instance_cache: Dict[Any, BatchLoader] = {}

    def _validate_loader_instance(self, loader_instances: Dict[Any, Any]):
        for cls, loader in loader_instances.items():
            if not (isclass(cls) and issubclass(cls, BatchLoader)):
                raise AttributeError(f'{cls!r} must be subclass of BatchLoader')
            if not isinstance(loader, cls):
                raise AttributeError(f'{loader!r} is not instance of {cls.__name__}')
        return True

    def _create_instance(self, loader_kls) -> BatchLoader:
        """
        1. is class?
            - set class attributes from loader_params / global_loader_param
        2. is func
        """
        if not isclass(loader_kls):
            return BatchLoader(batch_load_fn=loader_kls, debug=self.debug)

        loader_instance = loader_kls(debug=self.debug)
        param_config = merge_dicts(
            self.global_loader_param,
            self.loader_params.get(loader_kls, {}))

        for field, has_default in get_loader_fields(loader_kls):
            if has_default and field not in param_config:
                continue
            try:
                value = param_config[field]
            except KeyError:
                raise LoaderFieldNotProvidedError(f'{loader_kls.__name__}.{field} not found in Resolver()')
            setattr(loader_instance, field, value)
        return loader_instance

    def _get_loader(self, loader_kls) -> BatchLoader:
        if loader_kls not in self.loader_instance_cache:
            if loader_kls in self.loader_instances:
                self.loader_instance_cache[loader_kls] = self.loader_instances[loader_kls]
            else:
                self.loader_instance_cache[loader_kls] = self._create_instance(loader_kls)
        return self.loader_instance_cache[loader_kls]

    def _execute_resolve_method(self, method: Callable, parent: object):
        params = {}
        for name, param in inspect.signature(method).parameters.items():
            if isinstance(param.default, Depends):
                params[name] = self._get_loader(param.default.dependency)
            elif name == 'context':
                params[name] = self.context
            elif name == 'parent':
                params[name] = parent
        return method(**params)

    def _parse_to_field_type(self, node: BaseModel, field: str, val):
        field_info = node.__class__.model_fields[field]
        if val is None and not field_info.is_required():
            return val
        adapter = _get_type_adapter(field_info.annotation)
        return adapter.validate_python(val, from_attributes=True)

    async def _execute_resolve_method_field(
            self,
            node: BaseModel,
            field: str,
            method: Callable,
            parent: object):

        val = self._execute_resolve_method(method, parent)

        while iscoroutine(val) or asyncio.isfuture(val):
            val = await val

        val = self._parse_to_field_type(node, field, val)
        val = await self._traverse(val, node)
        setattr(node, field, val)

    async def _traverse(self, node: T, parent: object) -> T:
        if isinstance(node, (list, tuple)):
            await asyncio.gather(*[self._traverse(t, parent) for t in node])
            return node

        if not isinstance(node, BaseModel):
            return node

        kls = node.__class__
        tasks = []
        resolved = set()

        for method_name, field in get_resolve_methods(kls):
            resolved.add(field)
            tasks.append(self._execute_resolve_method_field(
                node=node,
                field=field,
                method=getattr(node, method_name),
                parent=parent))

        for field in kls.model_fields:
            if field in resolved:
                continue
            value = getattr(node, field)
            if isinstance(value, (BaseModel, list, tuple)):
                tasks.append(self._traverse(value, node))

        await asyncio.gather(*tasks)
        return node

    async def resolve(self, data: T) -> T:
        start = time.perf_counter()
        await self._traverse(data, None)

        if self.debug:
            elapsed = (time.perf_counter() - start) * 1000
            dispatches = ', '.join(f'{loader.name}: {loader.dispatch_count}' for loader in self.loader_instance_cache.values())
            logger.debug(f'resolve finished in {elapsed:.1f}ms, dispatches: {dispatches or "-"}')

        return data
