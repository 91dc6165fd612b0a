"""
request scoped loaders over the case database.

each batch_load_fn issues one query per relation for the whole key list,
never one query per key.
"""
import asyncio
from dataclasses import dataclass, fields
from collections import defaultdict
from typing import Dict

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import async_sessionmaker

import case_dataloader.models as sm
from case_dataloader.loader import ListLoader, SingleLoader
from case_dataloader.schema import Entity, EntityAttribute, EventEntity, PresenceEntity
from case_dataloader.util import build_list, is_undefined_relation_error, to_uuid, to_uuid_keys
from case_dataloader.utils.logger import get_logger

logger = get_logger(__name__)


async def _scalars(session_factory: async_sessionmaker, stmt):
    async with session_factory() as session:
        res = await session.execute(stmt)
        return res.scalars().all()


async def _rows(session_factory: async_sessionmaker, stmt):
    async with session_factory() as session:
        res = await session.execute(stmt)
        return res.all()


class EntityLoader(SingleLoader[str, Entity]):
    """entity by id, with its attributes and tags merged in"""
    session_factory: async_sessionmaker

    async def batch_load_fn(self, keys):
        ids = to_uuid_keys(keys)
        if not ids:
            return [None for _ in keys]

        # one session per query, a session can't run statements concurrently
        entity_rows, attribute_rows, tag_rows = await asyncio.gather(
            _scalars(self.session_factory, select(sm.Entity)
                .where(sm.Entity.id.in_(ids))),
            _scalars(self.session_factory, select(sm.EntityAttribute)
                .where(sm.EntityAttribute.entity_id.in_(ids))
                .order_by(sm.EntityAttribute.created_at.asc())),
            _rows(self.session_factory, select(sm.EntityTag.entity_id, sm.Tag.name)
                .join(sm.Tag, sm.Tag.id == sm.EntityTag.tag_id)
                .where(sm.EntityTag.entity_id.in_(ids))
                .order_by(sm.Tag.name.asc())),
        )

        attributes: Dict = defaultdict(list)
        for row in attribute_rows:
            attributes[row.entity_id].append(EntityAttribute.model_validate(row))

        tags: Dict = defaultdict(list)
        for entity_id, name in tag_rows:
            tags[entity_id].append(name)

        entities: Dict = {}
        for row in entity_rows:
            entities[row.id] = Entity(
                id=row.id,
                entity_type=row.entity_type,
                display_name=row.display_name,
                attributes=attributes.get(row.id, []),
                tags=tags.get(row.id, []),
                metadata=row.metadata_,
                created_at=row.created_at,
                updated_at=row.updated_at)

        return [entities.get(to_uuid(k)) for k in keys]


class EventEntitiesLoader(ListLoader[str, EventEntity]):
    """
    entities linked to an event.

    `event_entities` arrived with a later migration, against an older schema
    every event simply has no linked entities.
    """
    session_factory: async_sessionmaker

    async def batch_load_fn(self, keys):
        ids = to_uuid_keys(keys)
        if not ids:
            return [[] for _ in keys]

        try:
            rows = await _scalars(self.session_factory, select(sm.EventEntity)
                .where(sm.EventEntity.event_id.in_(ids))
                .order_by(sm.EventEntity.event_id.asc(), sm.EventEntity.entity_id.asc()))
        except DBAPIError as e:
            if not is_undefined_relation_error(e):
                raise
            logger.warning(f'{self.name}: event_entities is missing, returning empty lists ({e.orig!r})')
            return [[] for _ in keys]

        items = [EventEntity.model_validate(row) for row in rows]
        return list(build_list(items, [to_uuid(k) for k in keys], lambda x: x.event_id))


class PresenceEntitiesLoader(ListLoader[str, PresenceEntity]):
    """entities linked to a presence"""
    session_factory: async_sessionmaker

    async def batch_load_fn(self, keys):
        ids = to_uuid_keys(keys)
        if not ids:
            return [[] for _ in keys]

        rows = await _scalars(self.session_factory, select(sm.PresenceEntity)
            .where(sm.PresenceEntity.presence_id.in_(ids))
            .order_by(sm.PresenceEntity.presence_id.asc(), sm.PresenceEntity.entity_id.asc()))

        items = [PresenceEntity.model_validate(row) for row in rows]
        return list(build_list(items, [to_uuid(k) for k in keys], lambda x: x.presence_id))


@dataclass
class CaseLoaders:
    entities_by_id: EntityLoader
    event_entities_by_event_id: EventEntitiesLoader
    presence_entities_by_presence_id: PresenceEntitiesLoader

    def clear(self) -> None:
        for f in fields(self):
            getattr(self, f.name).clear()


def create_loaders(session_factory: async_sessionmaker, debug: bool = False) -> CaseLoaders:
    """
    build a fresh set of loaders for one request, eg: in a graphql context factory.
    never share the result between requests.
    """
    def _bind(kls):
        loader = kls(debug=debug)
        loader.session_factory = session_factory
        return loader

    return CaseLoaders(
        entities_by_id=_bind(EntityLoader),
        event_entities_by_event_id=_bind(EventEntitiesLoader),
        presence_entities_by_presence_id=_bind(PresenceEntitiesLoader),
    )

