"""
RepGraph — Configuration
Unified config for the reputation graph, score engine and computation jobs.

All settings load from environment variables with safe defaults for development.
In production, set REPGRAPH_ENV=production to enforce required values.
"""
import json
import os
import secrets
import warnings
from functools import lru_cache
from typing import Any, Dict

from dotenv import load_dotenv

load_dotenv()


class Settings:
    def __init__(self):
        self.ENVIRONMENT = os.getenv("REPGRAPH_ENV", "development")

        # === Storage ===
        self.GRAPH_BACKEND = os.getenv("GRAPH_BACKEND", "memory")   # memory | neo4j
        self.NEO4J_URI = os.getenv("NEO4J_URI", "bolt://localhost:7687")
        self.NEO4J_USER = os.getenv("NEO4J_USER", "neo4j")
        self.NEO4J_PASSWORD = os.getenv("NEO4J_PASSWORD", "repgraph_dev_password")
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

        # === Scoring ===
        self.SCORE_SQUASH_K = float(os.getenv("SCORE_SQUASH_K", "3.0"))
        self.SCORE_DECAY_HALF_LIFE_DAYS = float(os.getenv("SCORE_DECAY_HALF_LIFE_DAYS", "0"))
        self.SCORE_CONFIDENCE_SCALE = float(os.getenv("SCORE_CONFIDENCE_SCALE", "10"))

        # Optional JSON override of DOMAIN_FACTOR_WEIGHTS (same shape)
        self.DOMAIN_FACTOR_WEIGHTS_JSON = os.getenv("DOMAIN_FACTOR_WEIGHTS_JSON", "")

        # === Computation jobs ===
        self.COMPUTE_QUEUE_MODE = os.getenv("COMPUTE_QUEUE_MODE", "inline")   # inline | arq
        self.COMPUTE_MAX_WORKERS = int(os.getenv("COMPUTE_MAX_WORKERS", "4"))
        # Running jobs renew their claim before every unit; must outlive one unit
        self.COMPUTE_CLAIM_TTL_SECONDS = int(os.getenv("COMPUTE_CLAIM_TTL_SECONDS", "3600"))
        self.COMPUTE_TRAVERSAL_DEPTH = int(os.getenv("COMPUTE_TRAVERSAL_DEPTH", "1"))
        self.COMPUTE_TRAVERSAL_MAX_NODES = int(os.getenv("COMPUTE_TRAVERSAL_MAX_NODES", "500"))
        self.SCHEDULER_FULL_RECOMPUTE_HOURS = int(os.getenv("SCHEDULER_FULL_RECOMPUTE_HOURS", "24"))
        # CompareToAverage reads a baseline snapshot no older than this
        self.BASELINE_TTL_SECONDS = int(os.getenv("BASELINE_TTL_SECONDS", "300"))

        # === Application ===
        self._secret_from_env = os.getenv("SECRET_KEY", "")
        if self._secret_from_env:
            self.SECRET_KEY = self._secret_from_env
        else:
            self.SECRET_KEY = secrets.token_hex(32)
            if self.ENVIRONMENT == "production":
                raise RuntimeError("SECRET_KEY must be set in production. Add it to .env")
            warnings.warn("SECRET_KEY not set, using random key. JWTs will not survive restarts.")

        self.REPGRAPH_HOST = os.getenv("REPGRAPH_HOST", "0.0.0.0")
        self.REPGRAPH_PORT = int(os.getenv("REPGRAPH_PORT", "8000"))

        # Operators may trigger computations for any user and read graph stats
        self.OPERATOR_USER_IDS = [
            u.strip()
            for u in os.getenv("OPERATOR_USER_IDS", "").split(",")
            if u.strip()
        ]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def domain_factor_weights(self) -> Dict[str, Dict[str, Any]]:
        if not self.DOMAIN_FACTOR_WEIGHTS_JSON:
            return DOMAIN_FACTOR_WEIGHTS
        return json.loads(self.DOMAIN_FACTOR_WEIGHTS_JSON)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# === Domain factor weights ===
# How much each behavior category matters per reputation domain.
# "edges"  -> weight per incoming edge type (one factor per type present)
# "nodes"  -> weight per other-endpoint node type (only domains listing it get node factors)
# "default" applies to edge types not listed.
DOMAIN_FACTOR_WEIGHTS: Dict[str, Dict[str, Any]] = {
    "Overall": {
        "edges": {
            "Participation": 1.0,
            "Creation": 1.0,
            "Comment": 0.6,
            "Rating": 0.8,
            "Like": 0.4,
            "Follow": 0.7,
            "Vote": 0.5,
            "Association": 0.3,
        },
        "default": 0.5,
    },
    "Community": {
        "edges": {
            "Participation": 0.6,
            "Creation": 0.5,
            "Comment": 0.9,
            "Rating": 0.5,
            "Like": 0.7,
            "Follow": 1.0,
            "Vote": 0.8,
            "Association": 0.4,
        },
        "nodes": {
            "Community": 1.0,
            "User": 0.5,
        },
        "default": 0.5,
    },
    "Mission": {
        "edges": {
            "Participation": 1.0,
            "Creation": 0.9,
            "Comment": 0.2,
            "Rating": 0.6,
            "Like": 0.1,
            "Follow": 0.1,
            "Vote": 0.3,
            "Association": 0.2,
        },
        "default": 0.2,
    },
    "Content": {
        "edges": {
            "Participation": 0.3,
            "Creation": 1.0,
            "Comment": 0.8,
            "Rating": 0.9,
            "Like": 0.8,
            "Follow": 0.3,
            "Vote": 0.6,
            "Association": 0.2,
        },
        "nodes": {
            "Activity": 0.6,
            "Tag": 0.4,
        },
        "default": 0.3,
    },
    "Trust": {
        "edges": {
            "Participation": 0.7,
            "Creation": 0.4,
            "Comment": 0.2,
            "Rating": 1.0,
            "Like": 0.3,
            "Follow": 0.8,
            "Vote": 0.9,
            "Association": 0.5,
        },
        "default": 0.4,
    },
}


# === Query bounds ===
GRAPH_QUERY_LIMITS = {
    "depth": {"min": 1, "max": 3, "default": 2},
    "max_nodes": {"min": 10, "max": 500, "default": 100},
    "min_strength": {"min": 0.0, "max": 1.0, "default": 0.2},
}

VISUALIZATION_LIMITS = {
    "max_nodes": {"min": 10, "max": 300, "default": 100},
}

TOP_USERS_LIMITS = {"min": 1, "max": 100, "default": 10}
