from __future__ import annotations

import argparse
import json
import sys

from db import init_db
from logging_utils import get_logger
from models.pipeline_runs import ORG_TYPES
from pipeline.errors import ValidationError
from pipeline.executor import STAGE_IDS, StageExecutor
from pipeline.services import build_match_engine

logger = get_logger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Create and execute one pipeline run synchronously")
    p.add_argument("--asset-id", type=int, default=None, help="Asset to import (omit for match-only runs)")
    p.add_argument("--dry-run", action="store_true", help="Parse and resolve without domain writes")
    p.add_argument("--from-stage", choices=STAGE_IDS, default=None)
    p.add_argument("--to-stage", choices=STAGE_IDS, default=None)
    p.add_argument("--org-type", choices=ORG_TYPES, default=None)
    p.add_argument("--params", default=None, help="JSON object of stage parameters")
    p.add_argument("--created-by", default="cli")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    params = None
    if args.params:
        params = json.loads(args.params)
        if not isinstance(params, dict):
            raise SystemExit("--params must be a JSON object")

    init_db()
    executor = StageExecutor(match_engine=build_match_engine())
    try:
        run_id = executor.create_run(
            args.asset_id,
            args.dry_run,
            from_stage=args.from_stage,
            to_stage=args.to_stage,
            org_type=args.org_type,
            params=params,
            created_by=args.created_by,
            trigger="cli",
        )
    except ValidationError as e:
        logger.error("Run not created | code=%s %s", e.code, e.message)
        return 2

    status = executor.execute(run_id)
    logger.info("run_pipeline complete | run_id=%s status=%s", run_id, status)
    return 0 if status == "succeeded" else 1


if __name__ == "__main__":
    sys.exit(main())
