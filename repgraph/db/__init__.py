"""
RepGraph — Database Package
Re-exports for convenience.
"""
from repgraph.db.neo4j import close, get_driver, get_session, init_schema
