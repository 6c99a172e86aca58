"""
RepGraph — Score Store

Computed scores keyed by (user, domain, subDomain). Upserts overwrite, which
is what makes a re-run of a computation job idempotent.

The population baseline (per-domain average + score distribution) is a
snapshot taken from the store and read by CompareToAverage.
"""
import bisect
import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from repgraph.scoring.engine import ReputationDomain, Score

_DOMAIN_ORDER = {d: i for i, d in enumerate(ReputationDomain)}


def sort_scores(scores: List[Score]) -> List[Score]:
    return sorted(scores, key=lambda s: (_DOMAIN_ORDER[s.domain], s.sub_domain or ""))


# =============================================
# BASELINE
# =============================================

@dataclass
class DomainBaseline:
    domain: ReputationDomain
    average: float
    count: int
    samples: List[float] = field(default_factory=list)   # sorted ascending

    def percentile(self, score: float) -> float:
        """Mid-rank percentile of `score` within the population (0-100)."""
        if not self.samples:
            return 50.0
        below = bisect.bisect_left(self.samples, score)
        ties = bisect.bisect_right(self.samples, score) - below
        return round(100.0 * (below + 0.5 * ties) / len(self.samples), 2)


@dataclass
class PopulationBaseline:
    domains: Dict[ReputationDomain, DomainBaseline] = field(default_factory=dict)
    taken_at: Optional[str] = None

    def for_domain(self, domain: ReputationDomain) -> Optional[DomainBaseline]:
        return self.domains.get(domain)

    @classmethod
    def from_scores(cls, scores: List[Score], taken_at: Optional[str] = None) -> "PopulationBaseline":
        """Overall-population baseline, counting only sub-domain-free rows."""
        grouped: Dict[ReputationDomain, List[float]] = {}
        for s in scores:
            if s.sub_domain:
                continue
            grouped.setdefault(s.domain, []).append(s.score)
        domains = {}
        for domain, values in grouped.items():
            values.sort()
            domains[domain] = DomainBaseline(
                domain=domain,
                average=sum(values) / len(values),
                count=len(values),
                samples=values,
            )
        return cls(domains=domains, taken_at=taken_at)


# =============================================
# STORES
# =============================================

class ScoreStore(ABC):

    @abstractmethod
    def upsert(self, score: Score) -> Score:
        ...

    @abstractmethod
    def get(self, user_id: str, domain: ReputationDomain, sub_domain: Optional[str] = None) -> Optional[Score]:
        ...

    @abstractmethod
    def get_user_scores(self, user_id: str) -> List[Score]:
        ...

    @abstractmethod
    def all_scores(self) -> List[Score]:
        ...

    def top_users(self, domain: ReputationDomain, limit: int = 10, sub_domain: Optional[str] = None) -> List[Score]:
        rows = [
            s for s in self.all_scores()
            if s.domain == domain and (s.sub_domain or None) == (sub_domain or None)
        ]
        rows.sort(key=lambda s: (-s.score, -s.confidence, s.user_id))
        return rows[:limit]

    def baseline(self, taken_at: Optional[str] = None) -> PopulationBaseline:
        return PopulationBaseline.from_scores(self.all_scores(), taken_at=taken_at)

    def stats(self) -> Dict[str, Any]:
        by_domain: Dict[str, Dict[str, Any]] = {}
        for s in self.all_scores():
            entry = by_domain.setdefault(s.domain.value, {"sum": 0.0, "min": s.score, "max": s.score, "count": 0})
            entry["sum"] += s.score
            entry["min"] = min(entry["min"], s.score)
            entry["max"] = max(entry["max"], s.score)
            entry["count"] += 1
        total = sum(e["count"] for e in by_domain.values())
        return {
            "total": total,
            "byDomain": {
                domain: {
                    "avg": round(e["sum"] / e["count"], 2),
                    "min": round(e["min"], 2),
                    "max": round(e["max"], 2),
                    "count": e["count"],
                }
                for domain, e in sorted(by_domain.items())
            },
        }


class InMemoryScoreStore(ScoreStore):
    def __init__(self):
        self._rows: Dict[tuple, Score] = {}
        self._lock = threading.Lock()

    def upsert(self, score: Score) -> Score:
        stored = copy.deepcopy(score)
        with self._lock:
            self._rows[stored.key] = stored
        return stored

    def get(self, user_id, domain, sub_domain=None) -> Optional[Score]:
        return self._rows.get((user_id, ReputationDomain.parse(domain).value, sub_domain or ""))

    def get_user_scores(self, user_id: str) -> List[Score]:
        return sort_scores([s for s in list(self._rows.values()) if s.user_id == user_id])

    def all_scores(self) -> List[Score]:
        return list(self._rows.values())
