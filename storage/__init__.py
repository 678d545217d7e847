"""
Storage Package.

This package manages persistence of the API key table.

Modules:
- database: Engine, session factory, transaction scope
- models/: ORM models
- key_store: SQLAlchemy implementation of the key store
"""

from storage.database import Database, DatabaseConfig, transaction_scope
from storage.key_store import SqlAlchemyKeyStore
