"""
RepGraph Database Layer

Neo4j connection management and schema initialization.

Uniqueness keys are enforced by the database, not only by application
checks, so concurrent upserts from several processes cannot race into
duplicates:

    (:GraphNode)     entity_id + entity_type  (node key)
    [:LINK]          edge_key                 (source|target|type)
    (:ReputationScore) score_key              (user|domain|subDomain)
    (:ComputationJob)  job_id
"""
from contextlib import contextmanager

import structlog
from neo4j import GraphDatabase
from neo4j.exceptions import ServiceUnavailable, SessionExpired

from repgraph.config import get_settings
from repgraph.errors import StoreUnavailable

logger = structlog.get_logger()

_driver = None


def get_driver():
    """Get or create Neo4j driver (singleton)."""
    global _driver
    if _driver is None:
        settings = get_settings()
        _driver = GraphDatabase.driver(settings.NEO4J_URI, auth=(settings.NEO4J_USER, settings.NEO4J_PASSWORD))
        logger.info("neo4j_connected", uri=settings.NEO4J_URI)
    return _driver


@contextmanager
def get_session():
    """Neo4j session; connectivity loss surfaces as StoreUnavailable."""
    driver = get_driver()
    session = driver.session()
    try:
        yield session
    except (ServiceUnavailable, SessionExpired) as e:
        logger.error("neo4j_unavailable", error=str(e))
        raise StoreUnavailable("Graph database unavailable", {"cause": str(e)}) from e
    finally:
        session.close()


def init_schema():
    """Initialize Neo4j constraints and indexes for the reputation graph."""
    constraints = [
        # Graph
        "CREATE CONSTRAINT graph_node_key IF NOT EXISTS "
        "FOR (n:GraphNode) REQUIRE (n.entity_id, n.entity_type) IS NODE KEY",
        "CREATE CONSTRAINT graph_node_id IF NOT EXISTS FOR (n:GraphNode) REQUIRE n.id IS UNIQUE",
        "CREATE CONSTRAINT graph_edge_key IF NOT EXISTS FOR ()-[r:LINK]-() REQUIRE r.edge_key IS UNIQUE",

        # Scores
        "CREATE CONSTRAINT score_key IF NOT EXISTS FOR (s:ReputationScore) REQUIRE s.score_key IS UNIQUE",

        # Jobs
        "CREATE CONSTRAINT job_id IF NOT EXISTS FOR (j:ComputationJob) REQUIRE j.job_id IS UNIQUE",
    ]

    indexes = [
        "CREATE INDEX graph_node_type IF NOT EXISTS FOR (n:GraphNode) ON (n.type)",
        "CREATE INDEX graph_node_seq IF NOT EXISTS FOR (n:GraphNode) ON (n.seq)",
        "CREATE INDEX score_user IF NOT EXISTS FOR (s:ReputationScore) ON (s.user_id)",
        "CREATE INDEX score_domain IF NOT EXISTS FOR (s:ReputationScore) ON (s.domain)",
        "CREATE INDEX job_status IF NOT EXISTS FOR (j:ComputationJob) ON (j.status)",
    ]

    with get_session() as session:
        for query in constraints + indexes:
            try:
                session.run(query)
            except Exception as e:
                logger.warning("schema_init_warning", query=query[:60], error=str(e))

    logger.info("schema_initialized", constraints=len(constraints), indexes=len(indexes))


def close():
    """Close the Neo4j driver."""
    global _driver
    if _driver:
        _driver.close()
        _driver = None
        logger.info("neo4j_disconnected")
