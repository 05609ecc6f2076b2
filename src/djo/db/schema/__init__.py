"""Database schema management for Document Job Orchestrator.

Module organization:
- definition.py: Schema DDL and creation (SCHEMA_VERSION, SCHEMA_SQL, create_schema)
- initialize.py: Database initialization (get_schema_version, initialize_database)

Usage:
    from djo.db.schema import initialize_database, SCHEMA_VERSION
"""

from .definition import SCHEMA_SQL, SCHEMA_VERSION, create_schema
from .initialize import get_schema_version, initialize_database

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "create_schema",
    "get_schema_version",
    "initialize_database",
]
