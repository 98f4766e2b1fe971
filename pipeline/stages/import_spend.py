"""Import payment rows from a spend asset (xlsx / csv) into `spend_entries`.

Re-running on the same asset inserts nothing new: rows are keyed by
(asset_id, row_hash) and written with INSERT OR IGNORE; counterparties are
get-or-create by name.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError

from logging_utils import get_logger
from models.assets import Asset
from models.pipeline_runs import BUYER_ENTITY_TYPE_BY_ORG_TYPE
from models.pipeline_skipped_rows import SKIP_MISSING_FIELD, SKIP_PARSE_ERROR
from models.spend_entries import SpendEntry
from pipeline import ledger
from pipeline.counterparty_store import ensure_counterparties
from pipeline.errors import StageFatal
from pipeline.stage_types import Stage, StageContext, StageResult
from settings import get_setting
from utils.object_storage import ObjectStorageError, download_object
from utils.spreadsheet import (
    ColumnMap,
    SheetRows,
    cell_at,
    clean_string,
    detect_columns,
    is_blank_row,
    is_metadata_sheet,
    parse_amount,
    parse_payment_date,
    raw_row,
    read_sheets,
    row_hash,
)

logger = get_logger(__name__)

# Buyer cells that are a repeated header, not an organisation.
_HEADER_BUYER_VALUES = {"council", "organisation", "authority", "trust", "department", "body"}

_SKIPPED_FLUSH = 500

Fetcher = Callable[[str], bytes]


class ImportSpendStage(Stage):
    stage_id = "import_spend"

    def __init__(self, *, fetch: Fetcher | None = None) -> None:
        self._fetch = fetch or download_object

    def _load_asset(self, ctx: StageContext) -> tuple[str, str, str | None]:
        session = ctx.session()
        try:
            asset = session.get(Asset, ctx.asset_id)
            if asset is None:
                raise StageFatal(f"asset {ctx.asset_id} not found", code="asset_not_found")
            return asset.object_key, asset.original_name, asset.content_type
        finally:
            session.close()

    def _read(self, ctx: StageContext) -> list[SheetRows]:
        object_key, original_name, content_type = self._load_asset(ctx)
        ctx.log.info("Downloading asset", {"object_key": object_key})
        try:
            content = self._fetch(object_key)
        except (ObjectStorageError, OSError) as e:
            raise StageFatal(f"asset download failed: {e}", code="download_failed") from e
        try:
            sheets = read_sheets(content, file_name=original_name, content_type=content_type)
        except ValueError as e:
            raise StageFatal(str(e), code="unreadable_asset") from e
        ctx.log.info(
            "Workbook parsed",
            {"sheets": [s.name for s in sheets], "size_bytes": len(content)},
        )
        return sheets

    def run(self, ctx: StageContext) -> StageResult:
        if ctx.asset_id is None:
            return self.skipped("no_asset")

        sheets = self._read(ctx)
        wanted = ctx.params.get("sheets")
        batch_size = int(ctx.params.get("batch_size") or get_setting("IMPORT_SPEND_BATCH_SIZE", 1000))
        max_warnings = int(get_setting("IMPORT_MAX_WARNINGS", 25))

        result = StageResult()
        reasons: Counter[str] = Counter()
        skipped_rows: list[dict[str, Any]] = []
        batch: list[dict[str, Any]] = []
        totals = {"inserted": 0, "existing": 0, "buyers": set(), "suppliers": set()}
        sheets_processed = 0

        def warn(message: str) -> None:
            if len(result.warnings) < max_warnings:
                result.warnings.append(message)

        def flush_skipped() -> None:
            if not skipped_rows:
                return
            session = ctx.session()
            try:
                ledger.record_skipped_rows(session, ctx.run_id, self.stage_id, list(skipped_rows))
            finally:
                session.close()
            skipped_rows.clear()

        def flush_batch() -> None:
            if not batch:
                return
            if not ctx.dry_run:
                inserted = self._write_batch(ctx, batch)
                totals["inserted"] += inserted
                totals["existing"] += len(batch) - inserted
            batch.clear()

        def skip(sheet: str, row_number: int, row: list[Any], reason: str, detail: str) -> None:
            result.skipped += 1
            reasons[reason] += 1
            skipped_rows.append(
                {
                    "sheet_name": sheet,
                    "row_number": row_number,
                    "reason": reason,
                    "detail": detail,
                    "raw_data": raw_row(row),
                }
            )
            if len(skipped_rows) >= _SKIPPED_FLUSH:
                flush_skipped()

        try:
            for sheet in sheets:
                if wanted and sheet.name not in wanted:
                    continue
                if is_metadata_sheet(sheet.name):
                    ctx.log.debug("Skipping metadata sheet", {"sheet": sheet.name})
                    continue

                columns = detect_columns(sheet.rows)
                if columns.header_index is None:
                    warn(f"{sheet.name}: no header row found, using positional columns")
                start = 0 if columns.header_index is None else columns.header_index + 1
                if start >= len(sheet.rows):
                    ctx.log.info("Sheet has no data rows, skipping", {"sheet": sheet.name})
                    continue

                sheets_processed += 1
                before = (result.processed, result.skipped)
                for index in range(start, len(sheet.rows)):
                    ctx.check_cancelled()
                    row = sheet.rows[index]
                    if is_blank_row(row):
                        continue
                    parsed = self._parse_row(sheet.name, index + 1, row, columns, skip)
                    if parsed is None:
                        continue
                    parsed["asset_id"] = ctx.asset_id
                    parsed["run_id"] = ctx.run_id
                    batch.append(parsed)
                    totals["buyers"].add(parsed["raw_buyer"])
                    totals["suppliers"].add(parsed["raw_supplier"])
                    result.processed += 1
                    if len(batch) >= batch_size:
                        flush_batch()
                flush_batch()

                ctx.log.info(
                    "Sheet processed",
                    {
                        "sheet": sheet.name,
                        "rows": result.processed - before[0],
                        "skipped": result.skipped - before[1],
                    },
                )
            flush_skipped()
        except OperationalError as e:
            raise StageFatal(f"store unavailable during import: {e}") from e

        for reason, count in reasons.items():
            warn(f"{count} row(s) skipped: {reason}")

        result.metrics = {
            "sheets_processed": sheets_processed,
            "rows_valid": result.processed,
            "rows_inserted": totals["inserted"],
            "rows_existing": totals["existing"],
            "distinct_buyers": len(totals["buyers"]),
            "distinct_suppliers": len(totals["suppliers"]),
            "skipped_reasons": dict(reasons),
            "dry_run": ctx.dry_run,
        }
        return result

    @staticmethod
    def _parse_row(
        sheet: str,
        row_number: int,
        row: list[Any],
        columns: ColumnMap,
        skip: Callable[[str, int, list[Any], str, str], None],
    ) -> dict[str, Any] | None:
        buyer = clean_string(cell_at(row, columns.buyer))
        if buyer and buyer.lower() in _HEADER_BUYER_VALUES:
            return None
        supplier = clean_string(cell_at(row, columns.supplier))
        if not buyer:
            skip(sheet, row_number, row, SKIP_MISSING_FIELD, "missing buyer")
            return None
        if not supplier:
            skip(sheet, row_number, row, SKIP_MISSING_FIELD, "missing supplier")
            return None

        raw_amount = cell_at(row, columns.amount)
        raw_date = cell_at(row, columns.date)
        amount = parse_amount(raw_amount)
        if amount is None:
            skip(sheet, row_number, row, SKIP_PARSE_ERROR, f"invalid amount: {raw_amount!r}")
            return None
        payment_date = parse_payment_date(raw_date)
        if payment_date is None:
            skip(sheet, row_number, row, SKIP_PARSE_ERROR, f"invalid date: {raw_date!r}")
            return None

        return {
            "raw_buyer": buyer,
            "raw_supplier": supplier,
            "amount": amount,
            "raw_amount": None if raw_amount is None else str(raw_amount),
            "payment_date": payment_date,
            "payment_date_raw": None if raw_date is None else str(raw_date),
            "source_sheet": sheet,
            "source_row_number": row_number,
            "row_hash": row_hash(sheet, row_number, row),
        }

    @staticmethod
    def _asset_row_count(session, asset_id: int) -> int:
        return int(
            session.query(func.count(SpendEntry.id)).filter(SpendEntry.asset_id == asset_id).scalar() or 0
        )

    def _write_batch(self, ctx: StageContext, batch: list[dict[str, Any]]) -> int:
        buyer_hint = BUYER_ENTITY_TYPE_BY_ORG_TYPE.get(ctx.org_type or "")
        session = ctx.session()
        try:
            buyer_ids = ensure_counterparties(
                session, "buyer", (r["raw_buyer"] for r in batch), entity_type_hint=buyer_hint
            )
            supplier_ids = ensure_counterparties(session, "supplier", (r["raw_supplier"] for r in batch))
            rows = [
                {**r, "buyer_id": buyer_ids[r["raw_buyer"]], "supplier_id": supplier_ids[r["raw_supplier"]]}
                for r in batch
            ]
            before = self._asset_row_count(session, ctx.asset_id)
            session.execute(sqlite_insert(SpendEntry).prefix_with("OR IGNORE"), rows)
            inserted = self._asset_row_count(session, ctx.asset_id) - before
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        logger.debug("Spend batch written | run=%s rows=%s inserted=%s", ctx.run_id, len(batch), inserted)
        return inserted
