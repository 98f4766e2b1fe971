"""Raw counterparty records (suppliers / buyers): creation, linking, merging."""

from __future__ import annotations

from typing import Iterable

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from logging_utils import get_logger
from models.counterparties import COUNTERPARTY_MODELS, CounterpartyAlias
from models.spend_entries import SpendEntry
from pipeline.errors import ConstraintViolation, ValidationError
from utils.time_utils import utcnow

logger = get_logger(__name__)

KINDS = tuple(COUNTERPARTY_MODELS)

_NAME_CHUNK = 500


def counterparty_model(kind: str):
    try:
        return COUNTERPARTY_MODELS[kind]
    except KeyError:
        raise ValidationError(f"unknown counterparty kind: {kind}", code="invalid_kind") from None


def spend_fk(kind: str):
    return SpendEntry.supplier_id if kind == "supplier" else SpendEntry.buyer_id


def _chunks(items: list[str], size: int) -> Iterable[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def lookup_counterparty_ids(session: Session, kind: str, names: Iterable[str]) -> dict[str, int]:
    """Map names to record ids, following merge aliases. Unknown names are absent."""

    model = counterparty_model(kind)
    wanted = sorted({n for n in names if n})
    found: dict[str, int] = {}
    for chunk in _chunks(wanted, _NAME_CHUNK):
        for rid, name in session.query(model.id, model.name).filter(model.name.in_(chunk)):
            found[name] = rid
        missing = [n for n in chunk if n not in found]
        if missing:
            for name, target in (
                session.query(CounterpartyAlias.name, CounterpartyAlias.counterparty_id)
                .filter(CounterpartyAlias.kind == kind, CounterpartyAlias.name.in_(missing))
            ):
                found[name] = target
    return found


def ensure_counterparties(
    session: Session,
    kind: str,
    names: Iterable[str],
    *,
    entity_type_hint: str | None = None,
) -> dict[str, int]:
    """Get-or-create one pending record per distinct name; returns name -> id.

    Uses INSERT OR IGNORE so concurrent imports of the same name are safe.
    Does not commit.
    """

    model = counterparty_model(kind)
    wanted = sorted({n for n in names if n})
    ids = lookup_counterparty_ids(session, kind, wanted)
    missing = [n for n in wanted if n not in ids]
    if missing:
        now = utcnow()
        for chunk in _chunks(missing, _NAME_CHUNK):
            rows = []
            for name in chunk:
                row = {"name": name, "match_status": "pending", "manually_verified": False, "created_at": now}
                if kind == "buyer":
                    row["entity_type_hint"] = entity_type_hint
                rows.append(row)
            session.execute(sqlite_insert(model).prefix_with("OR IGNORE"), rows)
        ids.update(lookup_counterparty_ids(session, kind, missing))
        logger.info("Created %s %s record(s)", len(missing), kind)
    return ids


def find_holder(session: Session, kind: str, entity_id: int, *, exclude_id: int | None = None):
    """Return the record currently holding `entity_id` as matched, if any."""

    model = counterparty_model(kind)
    q = session.query(model).filter(model.entity_id == entity_id, model.match_status == "matched")
    if exclude_id is not None:
        q = q.filter(model.id != exclude_id)
    return q.first()


def update_match_fields(
    session: Session,
    kind: str,
    record_id: int,
    values: dict,
    *,
    only_if_pending: bool = True,
) -> bool:
    """Write match lifecycle fields and commit.

    With `only_if_pending`, rows that were matched or overridden meanwhile are
    left alone. Returns True if a row was updated.

    Raises:
        ConstraintViolation: the matched-entity partial unique index rejected the
            write (another record already holds that entity).
    """

    model = counterparty_model(kind)
    q = session.query(model).filter(model.id == record_id)
    if only_if_pending:
        q = q.filter(model.match_status == "pending", model.manually_verified.is_(False))
    try:
        updated = q.update(dict(values), synchronize_session=False)
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise ConstraintViolation(
            f"{kind} {record_id}: entity already held by another record",
            meta={"kind": kind, "record_id": record_id, "entity_id": values.get("entity_id")},
        ) from e
    return bool(updated)


def merge_counterparties(session: Session, kind: str, source_id: int, target_id: int) -> int:
    """Fold `source` into `target` in one transaction; returns spend rows moved.

    Spend entries and aliases move to the target, the source name becomes an
    alias of the target and the source row is deleted. If the target has no
    match yet it inherits the source's. Nothing is visible until commit.
    """

    if source_id == target_id:
        raise ValidationError("cannot merge a record into itself", code="invalid_merge")

    model = counterparty_model(kind)
    fk = spend_fk(kind)
    try:
        source = session.get(model, source_id)
        target = session.get(model, target_id)
        if source is None or target is None:
            raise ValidationError(
                f"{kind} merge: record not found",
                code="not_found",
                meta={"source_id": source_id, "target_id": target_id},
            )

        moved = (
            session.query(SpendEntry)
            .filter(fk == source_id)
            .update({fk.key: target_id}, synchronize_session=False)
        )
        (
            session.query(CounterpartyAlias)
            .filter(CounterpartyAlias.kind == kind, CounterpartyAlias.counterparty_id == source_id)
            .update({CounterpartyAlias.counterparty_id: target_id}, synchronize_session=False)
        )
        alias = (
            session.query(CounterpartyAlias)
            .filter(CounterpartyAlias.kind == kind, CounterpartyAlias.name == source.name)
            .one_or_none()
        )
        if alias is None:
            session.add(CounterpartyAlias(kind=kind, name=source.name, counterparty_id=target_id))
        else:
            alias.counterparty_id = target_id

        inherit = None
        if target.match_status != "matched" and source.match_status == "matched":
            inherit = {
                "entity_id": source.entity_id,
                "match_status": "matched",
                "match_confidence": source.match_confidence,
                "manually_verified": source.manually_verified,
                "match_attempted_at": source.match_attempted_at,
            }

        session.delete(source)
        session.flush()
        if inherit:
            for k, v in inherit.items():
                setattr(target, k, v)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        "Merged %s %s into %s | spend_rows_moved=%s",
        kind,
        source_id,
        target_id,
        moved,
    )
    return int(moved or 0)
