"""Canonical entities and their registry extension records.

Registry-id uniqueness is enforced by `uq_entities_type_registry_id`; creation
is attempt-insert-then-reread so two writers racing on the same registry id
both end up with the single row that won.
"""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from logging_utils import get_logger
from models.entities import ENTITY_TYPES, Entity
from models.entity_details import DETAIL_MODELS
from utils.registry_base import RegistryCandidate

logger = get_logger(__name__)


def get_entity_by_registry_id(session: Session, entity_type: str, registry_id: str) -> Entity | None:
    return (
        session.query(Entity)
        .filter(Entity.entity_type == entity_type, Entity.registry_id == registry_id)
        .one_or_none()
    )


# extension column holding the registry id
_REGISTRY_ID_COLUMNS = {
    "company": "company_number",
    "healthcare_provider": "ods_code",
    "national_government": "slug",
}


def _detail_row(candidate: RegistryCandidate, entity_id: int):
    model = DETAIL_MODELS[candidate.entity_type]
    columns = set(model.__table__.columns.keys())
    values = {k: v for k, v in (candidate.details or {}).items() if k in columns}
    id_column = _REGISTRY_ID_COLUMNS.get(candidate.entity_type)
    if id_column and not values.get(id_column):
        values[id_column] = candidate.registry_id.strip()
    return model(entity_id=entity_id, raw_data=candidate.raw or None, **values)


def find_or_create_entity(session: Session, candidate: RegistryCandidate) -> tuple[Entity, bool]:
    """Return the entity for `candidate`'s registry id, creating it if needed.

    Commits on creation. Returns (entity, created).

    Raises:
        ValueError: unknown entity type or empty registry id.
    """

    if candidate.entity_type not in ENTITY_TYPES:
        raise ValueError(f"unknown entity_type: {candidate.entity_type}")
    registry_id = (candidate.registry_id or "").strip()
    if not registry_id:
        raise ValueError("registry_id must be non-empty")

    existing = get_entity_by_registry_id(session, candidate.entity_type, registry_id)
    if existing is not None:
        return existing, False

    entity = Entity(
        entity_type=candidate.entity_type,
        registry_id=registry_id,
        name=candidate.name,
        status=candidate.status,
        address_line_1=candidate.address_line_1,
        address_line_2=candidate.address_line_2,
        locality=candidate.locality,
        postal_code=candidate.postal_code,
        country=candidate.country,
    )
    try:
        session.add(entity)
        session.flush()
        session.add(_detail_row(candidate, entity.id))
        session.commit()
    except IntegrityError:
        session.rollback()
        winner = get_entity_by_registry_id(session, candidate.entity_type, registry_id)
        if winner is None:
            raise
        logger.info(
            "Entity creation lost race; reusing existing | type=%s registry_id=%s entity_id=%s",
            candidate.entity_type,
            registry_id,
            winner.id,
        )
        return winner, False

    logger.info(
        "Created entity | id=%s type=%s registry_id=%s name=%r",
        entity.id,
        entity.entity_type,
        entity.registry_id,
        entity.name,
    )
    return entity, True
