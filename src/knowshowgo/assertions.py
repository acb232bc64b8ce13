"""
Assertion store and Winner-Take-All (WTA) resolution.

Assertions are independent, possibly conflicting claims that a subject's
predicate has some value. Nothing is deduplicated: re-affirmations and
contradictions are all kept as evidence. Resolution scores every candidate
per (subject, predicate) and picks one winner:

    score = w_truth * truth
          + w_vote * sigmoid(vote_score / 10)
          + w_source * source_rel
          + w_recency * exp(-age / half_life)
          + w_strength * strength

Ties on score go to the most recently created assertion, then to the most
recently inserted one, so results never depend on incidental list order.
"""
import itertools
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, model_validator

from src.knowshowgo.errors import NotFoundError
from src.knowshowgo.logging_setup import get_logger
from src.knowshowgo.models import Assertion, Provenance, utcnow

log = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class ScoreWeights(BaseModel):
    truth: float = Field(0.45, ge=0.0)
    vote_score: float = Field(0.20, ge=0.0)
    source_rel: float = Field(0.15, ge=0.0)
    recency: float = Field(0.10, ge=0.0)
    strength: float = Field(0.10, ge=0.0)

    @model_validator(mode="after")
    def _sum_to_one(self):
        total = self.truth + self.vote_score + self.source_rel + self.recency + self.strength
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"score weights must sum to 1.0, got {total}")
        return self


class ResolverPolicy(BaseModel):
    """Tunable scoring policy; loaded from configuration rather than hard-coded."""

    weights: ScoreWeights = Field(default_factory=ScoreWeights)
    recency_half_life_seconds: float = Field(7 * SECONDS_PER_DAY, gt=0.0)
    min_truth_threshold: float = Field(0.0, ge=0.0, le=1.0)


def sigmoid(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


@dataclass
class Resolution:
    snapshot: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    evidence: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    def values(self) -> Dict[str, Any]:
        return {predicate: winner["value"] for predicate, winner in self.snapshot.items()}


class WTAResolver:
    def __init__(self, policy: Optional[ResolverPolicy] = None):
        self.policy = policy or ResolverPolicy()

    def score(self, assertion: Assertion, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        w = self.policy.weights
        age = max(0.0, (now - assertion.created_at).total_seconds())
        recency = math.exp(-age / self.policy.recency_half_life_seconds)
        return (
            w.truth * assertion.truth
            + w.vote_score * sigmoid(assertion.vote_score / 10)
            + w.source_rel * assertion.source_rel
            + w.recency * recency
            + w.strength * assertion.strength
        )

    def eligible(self, assertion: Assertion) -> bool:
        return assertion.status == "accepted" and assertion.truth >= self.policy.min_truth_threshold

    def rank(self, assertions: List[Assertion], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Score and order candidates: highest score, then newest, then last inserted."""
        now = now or utcnow()
        scored = [(self.score(a, now), a) for a in assertions if self.eligible(a)]
        scored.sort(key=lambda pair: (pair[0], pair[1].created_at, pair[1].seq), reverse=True)
        return [
            {"assertionId": a.uuid, "value": a.object, "score": s, "truth": a.truth}
            for s, a in scored
        ]

    def resolve(self, assertions: List[Assertion], now: Optional[datetime] = None) -> Resolution:
        """Group by predicate and pick one winner per group; empty input gives an empty result."""
        now = now or utcnow()
        by_predicate: Dict[str, List[Assertion]] = {}
        for a in assertions:
            by_predicate.setdefault(a.predicate, []).append(a)

        resolution = Resolution()
        for predicate, candidates in by_predicate.items():
            ranked = self.rank(candidates, now)
            if not ranked:
                continue
            winner = ranked[0]
            resolution.snapshot[predicate] = {
                "value": winner["value"],
                "assertionId": winner["assertionId"],
                "truth": winner["truth"],
                "score": winner["score"],
            }
            resolution.evidence[predicate] = ranked
        return resolution


class AssertionStore:
    """
    Thread-safe assertion storage with WTA resolution on read.

    Resolution copies the assertion list under the lock and scores the copy,
    so an assertion landing mid-resolution is simply seen by the next call.
    """

    def __init__(
        self,
        policy: Optional[ResolverPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.resolver = WTAResolver(policy)
        self.clock = clock
        self._assertions: Dict[str, Assertion] = {}
        self._seq = itertools.count(1)
        self._lock = threading.RLock()

    def create_assertion(
        self,
        subject: str,
        predicate: str,
        object: Any,
        truth: float = 1.0,
        strength: float = 1.0,
        vote_score: int = 0,
        source_rel: float = 1.0,
        source: str = "user",
        provenance: Optional[Provenance] = None,
        prev_assertion_id: Optional[str] = None,
    ) -> Assertion:
        # Construction validates every field before anything is stored
        assertion = Assertion(
            subject=subject,
            predicate=predicate,
            object=object,
            truth=truth,
            strength=strength,
            vote_score=vote_score,
            source_rel=source_rel,
            provenance=provenance or Provenance.now(source=source, trace_id="ksg-assertion"),
            created_at=self.clock(),
            prev_assertion_id=prev_assertion_id,
        )
        if prev_assertion_id and self.get_assertion(prev_assertion_id) is None:
            raise NotFoundError(f"Assertion {prev_assertion_id} not found", field="prev_assertion_id")
        with self._lock:
            assertion.seq = next(self._seq)
            self._assertions[assertion.uuid] = assertion
        log.info(
            "assertion_created",
            uuid=assertion.uuid,
            subject=subject,
            predicate=predicate,
            truth=truth,
        )
        return assertion

    def get_assertion(self, assertion_uuid: str) -> Optional[Assertion]:
        with self._lock:
            return self._assertions.get(assertion_uuid)

    def get_assertions(
        self,
        subject: Optional[str] = None,
        predicate: Optional[str] = None,
        include_retracted: bool = False,
    ) -> List[Assertion]:
        with self._lock:
            snapshot = list(self._assertions.values())
        return [
            a for a in snapshot
            if (subject is None or a.subject == subject)
            and (predicate is None or a.predicate == predicate)
            and (include_retracted or a.status != "retracted")
        ]

    def retract(self, assertion_uuid: str) -> Assertion:
        """Mark an assertion retracted; it stays stored but no longer competes."""
        with self._lock:
            assertion = self._assertions.get(assertion_uuid)
            if assertion is None:
                raise NotFoundError(f"Assertion {assertion_uuid} not found", field="assertion_uuid")
            assertion.status = "retracted"
        log.info("assertion_retracted", uuid=assertion_uuid)
        return assertion

    def resolve(self, subject: str, now: Optional[datetime] = None) -> Resolution:
        return self.resolver.resolve(self.get_assertions(subject=subject), now or self.clock())

    def snapshot(self, subject: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Resolved value per predicate; empty for an unknown subject."""
        return self.resolve(subject, now).values()

    def evidence(
        self,
        subject: str,
        predicate: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Union[List[Dict[str, Any]], Dict[str, List[Dict[str, Any]]]]:
        """Ranked evidence for one predicate, or every predicate keyed by name."""
        if predicate is not None:
            candidates = self.get_assertions(subject=subject, predicate=predicate)
            return self.resolver.rank(candidates, now or self.clock())
        return self.resolve(subject, now).evidence
