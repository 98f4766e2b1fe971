from __future__ import annotations

from sqlalchemy import distinct

from models.pipeline_runs import BUYER_ENTITY_TYPE_BY_ORG_TYPE
from models.spend_entries import SpendEntry
from pipeline.counterparty_store import spend_fk
from pipeline.match_engine import MatchBatchStats, MatchEngine, MatchThresholds
from pipeline.stage_types import Stage, StageContext, StageResult
from settings import get_setting


class MatchCounterpartiesStage(Stage):
    """Resolve pending suppliers or buyers against the registries.

    With an asset, only records referenced by that asset's spend are attempted;
    without one, the oldest pending records up to the limit.
    """

    def __init__(self, kind: str, engine: MatchEngine) -> None:
        self.kind = kind
        self.stage_id = f"match_{kind}s"
        self.engine = engine

    def _asset_record_ids(self, ctx: StageContext) -> list[int]:
        fk = spend_fk(self.kind)
        session = ctx.session()
        try:
            return [
                rid
                for (rid,) in session.query(distinct(fk)).filter(SpendEntry.asset_id == ctx.asset_id)
            ]
        finally:
            session.close()

    def run(self, ctx: StageContext) -> StageResult:
        restrict_to = self._asset_record_ids(ctx) if ctx.asset_id is not None else None
        limit = ctx.params.get(f"{self.kind}_limit", ctx.params.get("match_limit"))
        if limit is None and restrict_to is None:
            limit = int(get_setting("MATCH_DEFAULT_LIMIT", 100))

        hint = None
        if self.kind == "buyer":
            hint = BUYER_ENTITY_TYPE_BY_ORG_TYPE.get(ctx.org_type or "")

        thresholds = MatchThresholds.from_settings(ctx.params)
        ctx.log.info(
            f"Matching pending {self.kind}s",
            {
                "limit": limit,
                "restricted_to_asset": restrict_to is not None,
                "candidates": None if restrict_to is None else len(restrict_to),
                "auto_apply_threshold": thresholds.auto_apply,
                "min_threshold": thresholds.minimum,
            },
        )

        def progress(done: int, total: int, stats: MatchBatchStats) -> None:
            ctx.log.info(
                f"Matched {done}/{total} {self.kind}s",
                {"matched": stats.matched, "merged": stats.merged, "no_match": stats.no_match},
            )

        stats = self.engine.match_pending(
            self.kind,
            limit=limit,
            restrict_to=restrict_to,
            entity_type_hint=hint,
            dry_run=ctx.dry_run,
            thresholds=thresholds,
            check_cancelled=ctx.check_cancelled,
            progress=progress,
        )

        warnings = []
        if stats.unavailable:
            warnings.append(f"{stats.unavailable} {self.kind}(s) left pending: registry unavailable")
        if stats.ambiguous:
            warnings.append(f"{stats.ambiguous} {self.kind}(s) need review: ambiguous duplicate")
        if stats.errors:
            warnings.append(f"{stats.errors} {self.kind}(s) failed with an unexpected error")

        return StageResult(
            processed=stats.processed,
            skipped=stats.skipped,
            matched=stats.matched + stats.merged,
            metrics=stats.as_dict(),
            warnings=warnings,
        )
