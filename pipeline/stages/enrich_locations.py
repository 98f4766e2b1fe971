from __future__ import annotations

from typing import Any

from models.entities import Entity
from pipeline.errors import RegistryUnavailable
from pipeline.stage_types import Stage, StageContext, StageResult
from utils.postcodes_io import BULK_LIMIT, PostcodesIoClient, normalize_uk_postcode


class EnrichLocationsStage(Stage):
    """Geocode entities that have a postcode but no coordinates (postcodes.io)."""

    stage_id = "enrich_locations"

    def __init__(self, *, geocoder: Any | None = None) -> None:
        self._geocoder = geocoder

    @property
    def geocoder(self):
        if self._geocoder is None:
            self._geocoder = PostcodesIoClient()
        return self._geocoder

    def run(self, ctx: StageContext) -> StageResult:
        if ctx.dry_run:
            return self.skipped("dry_run")

        limit = min(int(ctx.params.get("location_limit") or BULK_LIMIT), BULK_LIMIT)
        session = ctx.session()
        try:
            by_postcode: dict[str, list[Entity]] = {}
            q = (
                session.query(Entity)
                .filter(Entity.postal_code.is_not(None), Entity.latitude.is_(None))
                .order_by(Entity.id)
            )
            for entity in q:
                key = normalize_uk_postcode(entity.postal_code)
                if not key:
                    continue
                if key not in by_postcode and len(by_postcode) >= limit:
                    continue
                by_postcode.setdefault(key, []).append(entity)

            if not by_postcode:
                return StageResult(metrics={"postcodes": 0, "entities_updated": 0})

            ctx.check_cancelled()
            try:
                found = self.geocoder.bulk_lookup(list(by_postcode))
            except RegistryUnavailable as e:
                ctx.log.warn("postcodes.io unavailable; locations not enriched", {"error": str(e)})
                return StageResult(
                    skipped=len(by_postcode),
                    metrics={"postcodes": len(by_postcode), "entities_updated": 0},
                    warnings=[f"postcodes.io unavailable: {e}"],
                )

            updated = 0
            for postcode, entities in by_postcode.items():
                loc = found.get(postcode)
                if not loc or loc.get("latitude") is None:
                    continue
                for entity in entities:
                    entity.latitude = loc["latitude"]
                    entity.longitude = loc["longitude"]
                    entity.region = entity.region or loc.get("region")
                    entity.country = entity.country or loc.get("country")
                    updated += 1
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        unresolved = len(by_postcode) - len(found)
        ctx.log.info(
            "Entity locations enriched",
            {"postcodes": len(by_postcode), "resolved": len(found), "entities_updated": updated},
        )
        return StageResult(
            processed=len(by_postcode),
            skipped=max(unresolved, 0),
            matched=updated,
            metrics={"postcodes": len(by_postcode), "resolved": len(found), "entities_updated": updated},
        )
