from .loader import BatchLoader, SingleLoader, ListLoader
from .util import build_list, build_object, is_undefined_relation_error
from .exceptions import (
    BatchLoadResultError,
    LoaderFieldNotProvidedError,
    GlobalLoaderFieldOverlappedError,
    ResolverTargetAttrNotFound)
from .depend import LoaderDepend, Loader
from .resolver import Resolver
from .loaders import (
    EntityLoader,
    EventEntitiesLoader,
    PresenceEntitiesLoader,
    CaseLoaders,
    create_loaders)
from .db import create_session_factory, init_schema


__all__ = [
    'BatchLoader',
    'SingleLoader',
    'ListLoader',

    'Resolver',
    'LoaderDepend',
    'Loader',  # short

    'BatchLoadResultError',
    'LoaderFieldNotProvidedError',
    'GlobalLoaderFieldOverlappedError',
    'ResolverTargetAttrNotFound',

    'build_list',
    'build_object',
    'is_undefined_relation_error',

    'EntityLoader',
    'EventEntitiesLoader',
    'PresenceEntitiesLoader',
    'CaseLoaders',
    'create_loaders',

    'create_session_factory',
    'init_schema',
]
