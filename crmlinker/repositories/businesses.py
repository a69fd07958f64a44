"""
Business Repository.

Responsibilities:
- Read-only lookups against the authoritative businesses table.
- Equality lookup on the legacy identifier.
- Case-insensitive substring lookup on the website field.

Non-Responsibilities:
- No writes.
- No ambiguity decisions.

Invariant:
Repositories must not encode domain decisions.
"""

from typing import Iterable, List

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from ..database import Business, Database
from ..errors import StorageFatal


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def contains_ci(column, value: str):
    """Case-insensitive substring clause."""
    return column.ilike(f"%{escape_like(value)}%", escape="\\")


class BusinessRepository:
    def __init__(self, database: Database):
        self.database = database

    def find_by_legacy_id(self, legacy_id: str) -> List[Business]:
        try:
            with self.database.session() as session:
                return session.query(Business).filter(Business.legacy_id == legacy_id).all()
        except SQLAlchemyError as e:
            raise StorageFatal(f"Business lookup by legacy id failed: {e}") from e

    def find_by_website_hosts(self, hosts: Iterable[str]) -> List[Business]:
        """Businesses whose website contains any of the given host forms."""
        clauses = [contains_ci(Business.website, h) for h in hosts if h]
        if not clauses:
            return []
        try:
            with self.database.session() as session:
                return session.query(Business).filter(or_(*clauses)).all()
        except SQLAlchemyError as e:
            raise StorageFatal(f"Business lookup by website failed: {e}") from e
