"""
RepGraph — Score & Job Persistence Layer

Neo4j-backed ScoreStore and JobStore. Score rows are MERGEd on their
unique key so a re-run overwrites in place; there is exactly one row per
(user, domain, subDomain).

Schema:
    (:ReputationScore {
        score_key,         # user|domain|subDomain, unique
        user_id, domain,
        sub_domain,        # "" when absent
        score,             # 0-100
        confidence,        # 0.0-1.0
        factors,           # JSON array
        metadata,          # JSON object
        calculated_at
    })

    (:ComputationJob {
        job_id, type, target, status,
        parameters, result, error,   # JSON
        created_at, started_at, completed_at, requested_by
    })
"""
import json
from typing import Any, Dict, List, Optional

import structlog

from repgraph.compute.jobs import ComputationJob, JobStatus, JobStore
from repgraph.db.neo4j import get_session
from repgraph.errors import JobNotFound
from repgraph.scoring.engine import Factor, ReputationDomain, Score
from repgraph.scoring.store import ScoreStore, sort_scores

logger = structlog.get_logger()


def _score_key(user_id: str, domain: ReputationDomain, sub_domain: Optional[str]) -> str:
    return f"{user_id}|{domain.value}|{sub_domain or ''}"


def _score_from_props(props: Dict[str, Any]) -> Score:
    return Score(
        user_id=props["user_id"],
        domain=ReputationDomain(props["domain"]),
        sub_domain=props.get("sub_domain") or None,
        score=props["score"],
        confidence=props["confidence"],
        factors=[Factor(**f) for f in json.loads(props.get("factors") or "[]")],
        calculated_at=props.get("calculated_at"),
        metadata=json.loads(props.get("metadata") or "{}"),
    )


class Neo4jScoreStore(ScoreStore):

    def upsert(self, score: Score) -> Score:
        with get_session() as session:
            session.run("""
                MERGE (s:ReputationScore {score_key: $score_key})
                SET s.user_id = $user_id,
                    s.domain = $domain,
                    s.sub_domain = $sub_domain,
                    s.score = $score,
                    s.confidence = $confidence,
                    s.factors = $factors,
                    s.metadata = $metadata,
                    s.calculated_at = $calculated_at
            """,
                score_key=_score_key(score.user_id, score.domain, score.sub_domain),
                user_id=score.user_id,
                domain=score.domain.value,
                sub_domain=score.sub_domain or "",
                score=score.score,
                confidence=score.confidence,
                factors=json.dumps([f.to_dict() for f in score.factors]),
                metadata=json.dumps(score.metadata, sort_keys=True, default=str),
                calculated_at=score.calculated_at,
            )
        logger.debug("score_persisted", user_id=score.user_id, domain=score.domain.value,
                     sub_domain=score.sub_domain)
        return score

    def get(self, user_id, domain, sub_domain=None) -> Optional[Score]:
        domain = ReputationDomain.parse(domain)
        with get_session() as session:
            record = session.run(
                "MATCH (s:ReputationScore {score_key: $key}) RETURN properties(s) AS props",
                key=_score_key(user_id, domain, sub_domain),
            ).single()
        return _score_from_props(record["props"]) if record else None

    def get_user_scores(self, user_id: str) -> List[Score]:
        with get_session() as session:
            result = session.run(
                "MATCH (s:ReputationScore {user_id: $user_id}) RETURN properties(s) AS props",
                user_id=user_id,
            )
            return sort_scores([_score_from_props(r["props"]) for r in result])

    def all_scores(self) -> List[Score]:
        with get_session() as session:
            result = session.run("MATCH (s:ReputationScore) RETURN properties(s) AS props")
            return [_score_from_props(r["props"]) for r in result]

    def top_users(self, domain, limit=10, sub_domain=None) -> List[Score]:
        domain = ReputationDomain.parse(domain)
        with get_session() as session:
            result = session.run("""
                MATCH (s:ReputationScore {domain: $domain, sub_domain: $sub_domain})
                RETURN properties(s) AS props
                ORDER BY s.score DESC, s.confidence DESC, s.user_id ASC
                LIMIT $limit
            """, domain=domain.value, sub_domain=sub_domain or "", limit=limit)
            return [_score_from_props(r["props"]) for r in result]


class Neo4jJobStore(JobStore):

    def save(self, job: ComputationJob) -> None:
        with get_session() as session:
            session.run("""
                MERGE (j:ComputationJob {job_id: $job_id})
                SET j += $props
            """, job_id=job.job_id, props=job.to_record())

    def get(self, job_id: str) -> ComputationJob:
        with get_session() as session:
            record = session.run(
                "MATCH (j:ComputationJob {job_id: $job_id}) RETURN properties(j) AS props",
                job_id=job_id,
            ).single()
        if record is None:
            raise JobNotFound(f"Computation job {job_id} not found", {"job_id": job_id})
        return ComputationJob.from_record(record["props"])

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[ComputationJob]:
        with get_session() as session:
            result = session.run("""
                MATCH (j:ComputationJob)
                WHERE $status IS NULL OR j.status = $status
                RETURN properties(j) AS props
                ORDER BY j.created_at
            """, status=status.value if status else None)
            return [ComputationJob.from_record(r["props"]) for r in result]

    def count_by_status(self) -> Dict[str, int]:
        with get_session() as session:
            result = session.run("MATCH (j:ComputationJob) RETURN j.status AS status, count(j) AS count")
            return {r["status"]: r["count"] for r in result}
