"""
Database Infrastructure Package for Prompt Generator SaaS

Exports database utilities. Service providers live in
app.infrastructure.db.dependencies and are re-exported by the API layer.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_session_context,
    init_db,
    close_db,
)


__all__ = [
    "DatabaseManager",
    "get_db_manager",
    "get_session_context",
    "init_db",
    "close_db",
]
