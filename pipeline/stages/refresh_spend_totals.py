"""Recompute per-entity spend totals for entities touched by an asset."""

from __future__ import annotations

from sqlalchemy import func

from models.counterparties import Buyer, Supplier
from models.entities import Entity
from models.spend_entries import SpendEntry
from pipeline.stage_types import Stage, StageContext, StageResult
from utils.time_utils import utcnow


def _entity_ids_for_asset(session, model, fk, asset_id: int) -> set[int]:
    return {
        eid
        for (eid,) in session.query(model.entity_id)
        .join(SpendEntry, fk == model.id)
        .filter(SpendEntry.asset_id == asset_id, model.entity_id.is_not(None))
        .distinct()
    }


def _totals(session, model, fk, entity_ids: set[int]) -> dict[int, object]:
    if not entity_ids:
        return {}
    return dict(
        session.query(model.entity_id, func.sum(SpendEntry.amount))
        .join(SpendEntry, fk == model.id)
        .filter(model.entity_id.in_(entity_ids))
        .group_by(model.entity_id)
        .all()
    )


def refresh_entity_totals(session, *, asset_id: int | None = None) -> dict[str, int]:
    """Recompute buyer/supplier totals; all matched entities when `asset_id` is None. Commits."""

    if asset_id is None:
        buyer_entities = {e for (e,) in session.query(Buyer.entity_id).filter(Buyer.entity_id.is_not(None))}
        supplier_entities = {
            e for (e,) in session.query(Supplier.entity_id).filter(Supplier.entity_id.is_not(None))
        }
    else:
        buyer_entities = _entity_ids_for_asset(session, Buyer, SpendEntry.buyer_id, asset_id)
        supplier_entities = _entity_ids_for_asset(session, Supplier, SpendEntry.supplier_id, asset_id)

    spent = _totals(session, Buyer, SpendEntry.buyer_id, buyer_entities)
    received = _totals(session, Supplier, SpendEntry.supplier_id, supplier_entities)

    now = utcnow()
    for entity in session.query(Entity).filter(Entity.id.in_(buyer_entities | supplier_entities)):
        if entity.id in buyer_entities:
            entity.buyer_total_spend = spent.get(entity.id) or 0
        if entity.id in supplier_entities:
            entity.supplier_total_received = received.get(entity.id) or 0
        entity.spend_totals_updated_at = now
    session.commit()
    return {"buyer_entities": len(buyer_entities), "supplier_entities": len(supplier_entities)}


class RefreshSpendTotalsStage(Stage):
    stage_id = "refresh_spend_totals"

    def run(self, ctx: StageContext) -> StageResult:
        if ctx.dry_run:
            return self.skipped("dry_run")
        if ctx.asset_id is None:
            return self.skipped("no_asset")

        ctx.check_cancelled()
        session = ctx.session()
        try:
            counts = refresh_entity_totals(session, asset_id=ctx.asset_id)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        ctx.log.info("Spend totals refreshed", counts)
        return StageResult(
            processed=counts["buyer_entities"] + counts["supplier_entities"],
            metrics=counts,
        )
