from __future__ import annotations

import abc
from dataclasses import dataclass, field, replace
from typing import Any

from utils.name_matching import name_similarity
from utils.registry_http import MinIntervalRateLimiter, RegistryHttpClient


@dataclass(frozen=True)
class RegistryCandidate:
    """One registry hit. `score` is filled in by `RegistryClient.rank`."""

    entity_type: str
    registry_id: str
    name: str
    status: str | None = None
    address_line_1: str | None = None
    address_line_2: str | None = None
    locality: str | None = None
    postal_code: str | None = None
    country: str | None = None
    # Extension-record fields keyed by column name (see models.entity_details).
    details: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "registry_id": self.registry_id,
            "name": self.name,
            "status": self.status,
            "postal_code": self.postal_code,
            "score": round(self.score, 4),
        }


class RegistryClient(abc.ABC):
    """Base class for registry lookups.

    Subclasses set `entity_type` and implement `search()`. Each instance owns
    its rate limiter; construct one client per registry per process and share
    it between the pipeline and the background reconciler.
    """

    entity_type: str
    display_name: str

    def __init__(
        self,
        *,
        http: RegistryHttpClient | None = None,
        rate_limit_seconds: float = 0.5,
        **http_kwargs: Any,
    ) -> None:
        self.http = http or RegistryHttpClient(
            name=self.display_name,
            rate_limiter=MinIntervalRateLimiter(rate_limit_seconds),
            **http_kwargs,
        )

    @abc.abstractmethod
    def search(self, name: str) -> list[RegistryCandidate]:  # pragma: no cover
        raise NotImplementedError

    def rank(self, raw_name: str, candidates: list[RegistryCandidate]) -> list[RegistryCandidate]:
        """Score candidates against `raw_name`, best first."""

        scored = [
            replace(c, score=name_similarity(raw_name, c.name, self.entity_type))
            for c in candidates
        ]
        scored.sort(key=lambda c: c.score, reverse=True)
        return scored
