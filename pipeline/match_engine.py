"""Entity resolution for raw counterparty names.

Flow for one name (`MatchEngine.match_record`):

1. screen the name; obviously non-organisation names become `no_match`
   without touching a registry
2. query the registry client(s) for the entity-type hint and rank candidates
   by Dice similarity of the normalized names
3. `decide()` the best score: auto-apply / review / no-match
4. auto-apply: find-or-create the entity (registry-id unique constraint), then
   link the record; if another record already holds that entity the partial
   unique index rejects the link and the record is merged into the holder

Registry failures and per-name errors leave the record `pending` with
`match_attempted_at` stamped, so the next pass tries untouched names first
and a name that keeps failing cannot hold the head of the queue. The engine is
shared by pipeline stages and the background reconciler; correctness under
interleaving comes from the two unique constraints, not from a lock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from sqlalchemy.exc import OperationalError, SQLAlchemyError

import db
from logging_utils import get_logger
from pipeline.counterparty_store import (
    counterparty_model,
    find_holder,
    merge_counterparties,
    update_match_fields,
)
from pipeline.entity_store import find_or_create_entity, get_entity_by_registry_id
from pipeline.errors import (
    AmbiguousDuplicate,
    ConstraintViolation,
    InvalidName,
    RegistryRequestError,
    RegistryUnavailable,
    RunCancelled,
    StageFatal,
    ValidationError,
)
from settings import get_setting
from utils.name_matching import guess_entity_type, name_similarity, screen_counterparty_name
from utils.registry_base import RegistryCandidate, RegistryClient
from utils.time_utils import utcnow

logger = get_logger(__name__)

AUTO_APPLY = "auto_apply"
REVIEW = "review"
NO_MATCH = "no_match"

# match_note values for attempts that failed without a decision.
ERROR_NOTES = frozenset({"registry_error", "registry_not_configured", "error"})


@dataclass(frozen=True)
class MatchThresholds:
    auto_apply: float = 0.9
    minimum: float = 0.5
    ambiguity_margin: float = 0.02

    def __post_init__(self) -> None:
        if not (0.0 <= self.minimum <= self.auto_apply <= 1.0):
            raise ValueError("thresholds must satisfy 0 <= minimum <= auto_apply <= 1")

    @classmethod
    def from_settings(cls, overrides: dict[str, Any] | None = None) -> "MatchThresholds":
        o = overrides or {}
        return cls(
            auto_apply=float(o.get("auto_apply_threshold") or get_setting("MATCH_AUTO_APPLY_THRESHOLD", 0.9)),
            minimum=float(o.get("min_threshold") or get_setting("MATCH_MIN_THRESHOLD", 0.5)),
            ambiguity_margin=float(get_setting("MATCH_AMBIGUITY_MARGIN", 0.02)),
        )


def decide(best_score: float | None, thresholds: MatchThresholds) -> str:
    """Decision table for the best candidate's similarity."""

    if best_score is None or best_score < thresholds.minimum:
        return NO_MATCH
    if best_score >= thresholds.auto_apply:
        return AUTO_APPLY
    return REVIEW


@dataclass(frozen=True)
class Resolution:
    status: str
    confidence: float | None = None
    candidate: RegistryCandidate | None = None
    candidates: tuple[RegistryCandidate, ...] = ()
    # Entity already on file for `candidate`'s registry id, if any.
    entity_id: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "confidence": self.confidence,
            "entity_id": self.entity_id,
            "candidate": self.candidate.as_dict() if self.candidate else None,
            "candidates": [c.as_dict() for c in self.candidates],
        }


@dataclass
class MatchOutcome:
    kind: str
    record_id: int
    # matched | merged | pending | no_match | skipped
    status: str
    entity_id: int | None = None
    confidence: float | None = None
    reason: str | None = None
    merged_into: int | None = None
    moved_rows: int = 0
    dry_run: bool = False

    def as_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class MatchBatchStats:
    processed: int = 0
    matched: int = 0
    merged: int = 0
    review: int = 0
    no_match: int = 0
    unavailable: int = 0
    ambiguous: int = 0
    errors: int = 0
    skipped: int = 0
    outcomes: list[MatchOutcome] = field(default_factory=list)

    def add(self, outcome: MatchOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == "skipped":
            self.skipped += 1
            return
        self.processed += 1
        if outcome.status == "matched":
            self.matched += 1
        elif outcome.status == "merged":
            self.merged += 1
        elif outcome.status == "no_match":
            self.no_match += 1
        elif outcome.reason == "registry_unavailable":
            self.unavailable += 1
        elif outcome.reason == "ambiguous_duplicate":
            self.ambiguous += 1
        elif outcome.reason in ERROR_NOTES:
            self.errors += 1
        else:
            self.review += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "matched": self.matched,
            "merged": self.merged,
            "review": self.review,
            "no_match": self.no_match,
            "registry_unavailable": self.unavailable,
            "ambiguous": self.ambiguous,
            "errors": self.errors,
            "skipped": self.skipped,
        }


class MatchEngine:
    """Resolve counterparty names to entities. Thread-safe; share one per process."""

    def __init__(
        self,
        registries: dict[str, RegistryClient] | Iterable[RegistryClient],
        *,
        session_factory: Callable[[], Any] | None = None,
        thresholds: MatchThresholds | None = None,
    ) -> None:
        if isinstance(registries, dict):
            self.registries = dict(registries)
        else:
            self.registries = {r.entity_type: r for r in registries}
        self._session_factory = session_factory
        self.thresholds = thresholds or MatchThresholds.from_settings()

    def session(self):
        # Resolved per call so tests can swap db.SessionLocal.
        return (self._session_factory or db.SessionLocal)()

    # --- lookup / decide (no writes) ---

    def registries_for(self, entity_type_hint: str | None, *, strict: bool = False) -> list[RegistryClient]:
        """Clients to query for a hint.

        A hint with no configured client falls back to every client, unless
        `strict` (an operator asked for that registry by name).
        """

        if entity_type_hint:
            client = self.registries.get(entity_type_hint)
            if client is not None:
                return [client]
            if strict:
                return []
        return list(self.registries.values())

    def lookup(
        self, raw_name: str, entity_type_hint: str | None = None, *, strict: bool = False
    ) -> list[RegistryCandidate]:
        """Query registries and return candidates ranked best first."""

        clients = self.registries_for(entity_type_hint, strict=strict)
        if not clients:
            raise ValidationError(
                f"no registry configured for entity type {entity_type_hint!r}",
                code="registry_not_configured",
            )
        ranked: list[RegistryCandidate] = []
        for client in clients:
            ranked.extend(client.rank(raw_name, client.search(raw_name)))
        ranked.sort(key=lambda c: c.score, reverse=True)
        return ranked

    def resolve(
        self,
        raw_name: str,
        entity_type_hint: str | None = None,
        *,
        thresholds: MatchThresholds | None = None,
    ) -> Resolution:
        """Decide what to do with `raw_name` without writing anything.

        Raises:
            InvalidName: the name cannot be an organisation (no network call made).
            RegistryUnavailable: a registry stayed unavailable after retries.
            AmbiguousDuplicate: two entities on file both clear auto-apply.
        """

        th = thresholds or self.thresholds
        reason = screen_counterparty_name(raw_name)
        if reason is not None:
            raise InvalidName(f"not an organisation name: {raw_name!r}", code=reason)

        candidates = self.lookup(raw_name.strip(), entity_type_hint)
        if not candidates:
            return Resolution(status=NO_MATCH)

        best = candidates[0]
        status = decide(best.score, th)
        shortlist = tuple(candidates[:5])

        session = self.session()
        try:
            on_file = get_entity_by_registry_id(session, best.entity_type, best.registry_id)
            if status == AUTO_APPLY and len(candidates) > 1:
                runner_up = candidates[1]
                if (
                    runner_up.score >= th.auto_apply
                    and (runner_up.entity_type, runner_up.registry_id)
                    != (best.entity_type, best.registry_id)
                    and best.score - runner_up.score <= th.ambiguity_margin
                ):
                    other = get_entity_by_registry_id(
                        session, runner_up.entity_type, runner_up.registry_id
                    )
                    if on_file is not None and other is not None:
                        raise AmbiguousDuplicate(
                            f"{raw_name!r} matches two entities on file",
                            meta={
                                "entity_ids": [on_file.id, other.id],
                                "candidates": [best.as_dict(), runner_up.as_dict()],
                            },
                        )
            entity_id = on_file.id if on_file is not None else None
        finally:
            session.close()

        return Resolution(
            status=status,
            confidence=round(best.score, 4),
            candidate=best,
            candidates=shortlist,
            entity_id=entity_id,
        )

    # --- write-through ---

    def _hint_for(self, kind: str, record: Any, explicit: str | None) -> str | None:
        if explicit:
            return explicit
        hint = getattr(record, "entity_type_hint", None)
        if hint:
            return hint
        if kind == "supplier":
            return guess_entity_type(record.name)
        return None

    def _entity_for(self, candidate: RegistryCandidate) -> int:
        session = self.session()
        try:
            existing = get_entity_by_registry_id(session, candidate.entity_type, candidate.registry_id)
            if existing is not None:
                return existing.id
        finally:
            session.close()

        full = candidate
        client = self.registries.get(candidate.entity_type)
        fetch_profile = getattr(client, "fetch_profile", None)
        if fetch_profile is not None:
            profile = fetch_profile(candidate.registry_id)
            if profile is not None:
                full = profile

        session = self.session()
        try:
            entity, _created = find_or_create_entity(session, full)
            return entity.id
        finally:
            session.close()

    def _link(
        self,
        kind: str,
        record_id: int,
        entity_id: int,
        confidence: float | None,
        *,
        manually_verified: bool,
        only_if_pending: bool,
    ) -> MatchOutcome:
        values = {
            "entity_id": entity_id,
            "match_status": "matched",
            "match_confidence": confidence,
            "manually_verified": manually_verified,
            "match_attempted_at": utcnow(),
            "match_note": None,
            "candidate_entity_type": None,
            "candidate_registry_id": None,
            "candidate_name": None,
        }
        session = self.session()
        try:
            try:
                updated = update_match_fields(
                    session, kind, record_id, values, only_if_pending=only_if_pending
                )
            except ConstraintViolation:
                holder = find_holder(session, kind, entity_id, exclude_id=record_id)
                if holder is None:
                    raise
                holder_id = holder.id
                logger.info(
                    "Duplicate %s %s resolves to entity %s held by %s; merging",
                    kind,
                    record_id,
                    entity_id,
                    holder_id,
                )
                moved = merge_counterparties(session, kind, record_id, holder_id)
                return MatchOutcome(
                    kind=kind,
                    record_id=record_id,
                    status="merged",
                    entity_id=entity_id,
                    confidence=confidence,
                    merged_into=holder_id,
                    moved_rows=moved,
                )
        finally:
            session.close()

        if not updated:
            return MatchOutcome(kind=kind, record_id=record_id, status="skipped", reason="not_pending")
        return MatchOutcome(
            kind=kind,
            record_id=record_id,
            status="matched",
            entity_id=entity_id,
            confidence=confidence,
        )

    def _record_state(self, kind: str, record_id: int, values: dict[str, Any]) -> None:
        session = self.session()
        try:
            update_match_fields(session, kind, record_id, values, only_if_pending=True)
        finally:
            session.close()

    def _failed_attempt(
        self, kind: str, record_id: int, note: str, now: Any, *, dry_run: bool = False
    ) -> MatchOutcome:
        # Stays pending; the stamp moves it behind never-attempted names.
        if not dry_run:
            self._record_state(kind, record_id, {"match_note": note, "match_attempted_at": now})
        return MatchOutcome(kind=kind, record_id=record_id, status="pending", reason=note, dry_run=dry_run)

    def _stamp_error(self, kind: str, record_id: int) -> None:
        try:
            self._record_state(kind, record_id, {"match_note": "error", "match_attempted_at": utcnow()})
        except SQLAlchemyError:
            logger.exception("Could not record failed attempt for %s %s", kind, record_id)

    def match_record(
        self,
        kind: str,
        record_id: int,
        entity_type_hint: str | None = None,
        *,
        dry_run: bool = False,
        thresholds: MatchThresholds | None = None,
    ) -> MatchOutcome:
        """Resolve one pending record and persist the result (unless `dry_run`)."""

        model = counterparty_model(kind)
        session = self.session()
        try:
            record = session.get(model, record_id)
            if record is None or record.match_status != "pending" or record.manually_verified:
                return MatchOutcome(kind=kind, record_id=record_id, status="skipped", reason="not_pending")
            name = record.name
            hint = self._hint_for(kind, record, entity_type_hint)
        finally:
            session.close()

        now = utcnow()
        try:
            resolution = self.resolve(name, hint, thresholds=thresholds)
        except InvalidName as e:
            if not dry_run:
                self._record_state(
                    kind,
                    record_id,
                    {"match_status": "no_match", "match_note": e.code, "match_attempted_at": now},
                )
            return MatchOutcome(kind=kind, record_id=record_id, status="no_match", reason=e.code, dry_run=dry_run)
        except RegistryUnavailable as e:
            logger.warning("Registry unavailable for %s %s (%r): %s", kind, record_id, name, e)
            if not dry_run:
                self._record_state(
                    kind,
                    record_id,
                    {"match_note": "registry_unavailable", "match_attempted_at": now},
                )
            return MatchOutcome(
                kind=kind, record_id=record_id, status="pending", reason="registry_unavailable", dry_run=dry_run
            )
        except (RegistryRequestError, ValidationError) as e:
            note = "registry_error" if isinstance(e, RegistryRequestError) else e.code
            logger.warning("Lookup failed for %s %s (%r): %s", kind, record_id, name, e)
            return self._failed_attempt(kind, record_id, note, now, dry_run=dry_run)
        except AmbiguousDuplicate as e:
            logger.warning("Ambiguous duplicate for %s %s (%r): %s", kind, record_id, name, e.meta)
            if not dry_run:
                self._record_state(
                    kind,
                    record_id,
                    {"match_note": "ambiguous_duplicate", "match_attempted_at": now},
                )
            return MatchOutcome(
                kind=kind, record_id=record_id, status="pending", reason="ambiguous_duplicate", dry_run=dry_run
            )

        best = resolution.candidate
        candidate_fields = {
            "candidate_entity_type": best.entity_type if best else None,
            "candidate_registry_id": best.registry_id if best else None,
            "candidate_name": best.name if best else None,
        }

        if resolution.status == NO_MATCH:
            reason = "no_candidates" if best is None else "below_minimum"
            if not dry_run:
                self._record_state(
                    kind,
                    record_id,
                    {
                        "match_status": "no_match",
                        "match_confidence": resolution.confidence,
                        "match_note": reason,
                        "match_attempted_at": now,
                        **candidate_fields,
                    },
                )
            return MatchOutcome(
                kind=kind,
                record_id=record_id,
                status="no_match",
                confidence=resolution.confidence,
                reason=reason,
                dry_run=dry_run,
            )

        if resolution.status == REVIEW:
            if not dry_run:
                self._record_state(
                    kind,
                    record_id,
                    {
                        "match_confidence": resolution.confidence,
                        "match_note": "needs_review",
                        "match_attempted_at": now,
                        **candidate_fields,
                    },
                )
            return MatchOutcome(
                kind=kind,
                record_id=record_id,
                status="pending",
                confidence=resolution.confidence,
                reason="needs_review",
                dry_run=dry_run,
            )

        if dry_run:
            status = "matched"
            merged_into = None
            if resolution.entity_id is not None:
                session = self.session()
                try:
                    holder = find_holder(session, kind, resolution.entity_id, exclude_id=record_id)
                    if holder is not None:
                        status, merged_into = "merged", holder.id
                finally:
                    session.close()
            return MatchOutcome(
                kind=kind,
                record_id=record_id,
                status=status,
                entity_id=resolution.entity_id,
                confidence=resolution.confidence,
                merged_into=merged_into,
                dry_run=True,
            )

        try:
            entity_id = self._entity_for(best)
        except RegistryUnavailable as e:
            logger.warning("Profile fetch unavailable for %s %s: %s", kind, record_id, e)
            self._record_state(kind, record_id, {"match_note": "registry_unavailable", "match_attempted_at": now})
            return MatchOutcome(kind=kind, record_id=record_id, status="pending", reason="registry_unavailable")
        except RegistryRequestError as e:
            logger.warning("Profile fetch rejected for %s %s: %s", kind, record_id, e)
            return self._failed_attempt(kind, record_id, "registry_error", now)

        return self._link(
            kind,
            record_id,
            entity_id,
            resolution.confidence,
            manually_verified=False,
            only_if_pending=True,
        )

    def pending_ids(
        self,
        kind: str,
        *,
        limit: int | None = None,
        restrict_to: Iterable[int] | None = None,
        include_attempted: bool = True,
    ) -> list[int]:
        model = counterparty_model(kind)
        session = self.session()
        try:
            q = session.query(model.id).filter(
                model.match_status == "pending", model.manually_verified.is_(False)
            )
            if restrict_to is not None:
                ids = list(restrict_to)
                if not ids:
                    return []
                q = q.filter(model.id.in_(ids))
            if not include_attempted:
                q = q.filter(model.match_attempted_at.is_(None))
            # Never-attempted first, then least recently attempted.
            q = q.order_by(model.match_attempted_at.is_not(None), model.match_attempted_at, model.id)
            if limit is not None:
                q = q.limit(int(limit))
            return [rid for (rid,) in q.all()]
        finally:
            session.close()

    def count_pending(self, kind: str) -> int:
        model = counterparty_model(kind)
        session = self.session()
        try:
            return int(
                session.query(model)
                .filter(model.match_status == "pending", model.manually_verified.is_(False))
                .count()
            )
        finally:
            session.close()

    def match_pending(
        self,
        kind: str,
        *,
        limit: int | None = None,
        restrict_to: Iterable[int] | None = None,
        entity_type_hint: str | None = None,
        dry_run: bool = False,
        thresholds: MatchThresholds | None = None,
        check_cancelled: Callable[[], None] | None = None,
        progress: Callable[[int, int, MatchBatchStats], None] | None = None,
        progress_every: int | None = None,
    ) -> MatchBatchStats:
        """Match a batch of pending records; per-name failures never stop the batch.

        Raises:
            RunCancelled: from `check_cancelled`, between names.
            StageFatal: the store itself is unreachable.
        """

        ids = self.pending_ids(kind, limit=limit, restrict_to=restrict_to)
        stats = MatchBatchStats()
        every = int(progress_every or get_setting("MATCH_PROGRESS_EVERY", 50))

        for i, record_id in enumerate(ids, start=1):
            if check_cancelled is not None:
                check_cancelled()
            try:
                outcome = self.match_record(
                    kind, record_id, entity_type_hint, dry_run=dry_run, thresholds=thresholds
                )
            except RunCancelled:
                raise
            except OperationalError as e:
                raise StageFatal(f"store unavailable while matching {kind}s: {e}") from e
            except Exception:
                logger.exception("Matching failed for %s %s", kind, record_id)
                stats.errors += 1
                stats.processed += 1
                if not dry_run:
                    self._stamp_error(kind, record_id)
                continue
            stats.add(outcome)
            if progress is not None and (i % every == 0 or i == len(ids)):
                progress(i, len(ids), stats)

        return stats

    # --- manual operations ---

    def candidate_for(
        self, entity_type: str, registry_id: str, *, name: str | None = None
    ) -> RegistryCandidate:
        """Build a candidate for an operator-chosen registry id.

        Uses the entity on file, then the registry's profile lookup, then a
        bare candidate when the operator supplied the name.
        """

        registry_id = (registry_id or "").strip()
        if not registry_id:
            raise ValidationError("registry_id is required", code="invalid_registry_id")

        session = self.session()
        try:
            entity = get_entity_by_registry_id(session, entity_type, registry_id)
            if entity is not None:
                return RegistryCandidate(
                    entity_type=entity.entity_type,
                    registry_id=entity.registry_id,
                    name=entity.name,
                    status=entity.status,
                    postal_code=entity.postal_code,
                )
        finally:
            session.close()

        fetch_profile = getattr(self.registries.get(entity_type), "fetch_profile", None)
        if fetch_profile is not None:
            profile = fetch_profile(registry_id)
            if profile is None:
                raise ValidationError(
                    f"{entity_type} {registry_id} not found in registry", code="registry_id_not_found"
                )
            return profile

        if not name:
            raise ValidationError(
                f"name is required to link {entity_type} {registry_id}", code="name_required"
            )
        return RegistryCandidate(entity_type=entity_type, registry_id=registry_id, name=name)

    def link_manually(
        self,
        kind: str,
        record_id: int,
        candidate: RegistryCandidate,
        *,
        confidence: float | None = None,
    ) -> MatchOutcome:
        """Operator override: link regardless of thresholds; merges on conflict."""

        model = counterparty_model(kind)
        session = self.session()
        try:
            record = session.get(model, record_id)
            if record is None:
                raise ValidationError(f"{kind} {record_id} not found", code="not_found")
            entity, _created = find_or_create_entity(session, candidate)
            entity_id = entity.id
            score = confidence
            if score is None:
                score = round(name_similarity(record.name, entity.name, entity.entity_type), 4)
        finally:
            session.close()

        outcome = self._link(
            kind, record_id, entity_id, score, manually_verified=True, only_if_pending=False
        )
        logger.info("Manual link %s %s -> entity %s (%s)", kind, record_id, entity_id, outcome.status)
        return outcome

    def mark_no_match_manually(self, kind: str, record_id: int) -> MatchOutcome:
        session = self.session()
        try:
            updated = update_match_fields(
                session,
                kind,
                record_id,
                {
                    "entity_id": None,
                    "match_status": "no_match",
                    "match_confidence": None,
                    "manually_verified": True,
                    "match_attempted_at": utcnow(),
                    "match_note": "manual",
                },
                only_if_pending=False,
            )
        finally:
            session.close()
        if not updated:
            raise ValidationError(f"{kind} {record_id} not found", code="not_found")
        return MatchOutcome(kind=kind, record_id=record_id, status="no_match", reason="manual")

    def merge_records(self, kind: str, source_id: int, target_id: int) -> int:
        """Operator merge of two local records; returns spend rows moved."""

        session = self.session()
        try:
            return merge_counterparties(session, kind, source_id, target_id)
        finally:
            session.close()

    def suggest_merges(
        self, kind: str, *, threshold: float = 0.9, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Pairs of local names similar enough to be the same organisation."""

        model = counterparty_model(kind)
        session = self.session()
        try:
            rows = session.query(model.id, model.name, model.match_status).order_by(model.id).all()
        finally:
            session.close()

        profile = "company" if kind == "supplier" else None
        out: list[dict[str, Any]] = []
        for i, (a_id, a_name, a_status) in enumerate(rows):
            for b_id, b_name, b_status in rows[i + 1 :]:
                score = name_similarity(a_name, b_name, profile)
                if score < threshold:
                    continue
                # Keep the matched one (or the older one) as the target.
                target, source = (a_id, b_id) if a_status == "matched" or b_status != "matched" else (b_id, a_id)
                out.append(
                    {
                        "source_id": source,
                        "target_id": target,
                        "names": [a_name, b_name],
                        "similarity": round(score, 4),
                    }
                )
                if len(out) >= limit:
                    return out
        return out
