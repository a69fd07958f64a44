"""
Link Repository.

Responsibilities:
- Point lookup of link records by dedup key.
- Insert guarded by the dedup key unique constraint.
- Idempotent add of a source id to a link record.

Non-Responsibilities:
- No matching.
- No decision on what to do after a conflict.

Invariant:
An insert that hits the unique constraint is rejected, never overwritten.
"""

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..database import Database, LinkRecord, LinkSource
from ..errors import DuplicateKeyConflict, StorageFatal


class LinkRepository:
    def __init__(self, database: Database):
        self.database = database

    def find_by_key(self, key: Tuple[str, str]) -> Optional[LinkRecord]:
        website, address = key
        try:
            with self.database.session() as session:
                return (
                    session.query(LinkRecord)
                    .filter_by(dedup_website=website, dedup_address=address)
                    .first()
                )
        except SQLAlchemyError as e:
            raise StorageFatal(f"Link lookup failed for key {key!r}: {e}") from e

    def insert(self, link: LinkRecord) -> LinkRecord:
        """
        Insert a new link record with its sources.

        Raises:
            DuplicateKeyConflict: another writer already owns the dedup key
            StorageFatal: any other storage failure
        """
        try:
            with self.database.session() as session:
                session.add(link)
                try:
                    session.commit()
                except IntegrityError as e:
                    session.rollback()
                    raise DuplicateKeyConflict(link.dedup_key) from e
                return link
        except SQLAlchemyError as e:
            raise StorageFatal(f"Link insert failed for key {link.dedup_key!r}: {e}") from e

    def add_source(self, link_id: int, source_id: str) -> bool:
        """
        Add a source id to a link record.

        Returns:
            True if the id was added, False if it was already there
        """
        try:
            with self.database.session() as session:
                session.query(LinkRecord).filter_by(id=link_id).update(
                    {"updated_at": datetime.now()}, synchronize_session=False
                )
                session.add(LinkSource(link_id=link_id, source_id=source_id))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True
        except SQLAlchemyError as e:
            raise StorageFatal(f"Adding source {source_id} to link {link_id} failed: {e}") from e

    def get(self, link_id: int) -> Optional[LinkRecord]:
        with self.database.session() as session:
            return session.get(LinkRecord, link_id)

    def count(self) -> int:
        with self.database.session() as session:
            return session.query(LinkRecord).count()

    def delete_all(self) -> int:
        """Remove every link record and source. Returns the number of link records removed."""
        try:
            with self.database.session() as session:
                session.query(LinkSource).delete(synchronize_session=False)
                removed = session.query(LinkRecord).delete(synchronize_session=False)
                session.commit()
                return removed
        except SQLAlchemyError as e:
            raise StorageFatal(f"Clearing link records failed: {e}") from e
