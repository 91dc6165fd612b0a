import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class EntityAttribute(BaseModel):
    id: uuid.UUID
    entity_id: uuid.UUID
    attribute_name: str
    attribute_value: Any = None
    confidence: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Entity(BaseModel):
    id: uuid.UUID
    entity_type: str
    display_name: Optional[str] = None
    attributes: List[EntityAttribute] = []
    tags: List[str] = []
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EventEntity(BaseModel):
    event_id: uuid.UUID
    entity_id: uuid.UUID
    role: Optional[str] = None
    confidence: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class PresenceEntity(BaseModel):
    presence_id: uuid.UUID
    entity_id: uuid.UUID
    role: Optional[str] = None
    confidence: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)
