"""
Database schema and connection management.

Uses SQLAlchemy; SQLite by default, any SQLAlchemy URL works. The Database
handle is built once per process and passed to whatever needs storage.
"""

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Set

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

Base = declarative_base()


class Business(Base):
    """Authoritative business entity. Read-only for the reconciler."""

    __tablename__ = "businesses"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    website = Column(String)
    phone = Column(String)
    email = Column(String)
    full_address = Column(String)
    legacy_id = Column(String, index=True)  # old pin code carried over from the CRM


class LinkRecord(Base):
    """One row per distinct (website, address) dedup key."""

    __tablename__ = "link_records"
    __table_args__ = (
        UniqueConstraint("dedup_website", "dedup_address", name="uq_link_dedup_key"),
    )

    id = Column(Integer, primary_key=True)
    dedup_website = Column(String, nullable=False, default="")
    dedup_address = Column(String, nullable=False, default="")
    business_id = Column(Integer, ForeignKey("businesses.id"), nullable=True)
    match_type = Column(String, nullable=False)  # direct_id, fallback_match, unmatched
    name = Column(String)
    website = Column(String)
    address = Column(String)
    phone = Column(String)
    email = Column(String)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    sources = relationship(
        "LinkSource",
        back_populates="link",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def dedup_key(self):
        return (self.dedup_website, self.dedup_address)

    @property
    def source_ids(self) -> Set[str]:
        return {s.source_id for s in self.sources}


class LinkSource(Base):
    """CRM record id known to map to a link record."""

    __tablename__ = "link_sources"
    __table_args__ = (
        UniqueConstraint("link_id", "source_id", name="uq_link_source"),
    )

    id = Column(Integer, primary_key=True)
    link_id = Column(Integer, ForeignKey("link_records.id", ondelete="CASCADE"), nullable=False, index=True)
    source_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    link = relationship("LinkRecord", back_populates="sources")


class ReconcileJob(Base):
    """Durable work item: one CRM record id waiting to be reconciled."""

    __tablename__ = "reconcile_jobs"

    id = Column(Integer, primary_key=True)
    record_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, running, done, failed
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_attempt_at = Column(DateTime, nullable=False, default=datetime.now)
    last_error = Column(String)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


class Database:
    """
    Owns the engine and session factory.

    Connect once, share between worker threads, dispose on shutdown.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        connect_args = {}
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite":
            # Worker threads share the engine; give writers time to queue up
            connect_args = {"check_same_thread": False, "timeout": 30}
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(url, echo=echo, future=True, connect_args=connect_args)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def init_schema(self) -> None:
        """Create tables that do not exist yet."""
        Base.metadata.create_all(self.engine)

    def new_session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session and always close it."""
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def init_database(url: str) -> Database:
    """
    Build a Database handle and create tables.

    Args:
        url: SQLAlchemy database URL

    Returns:
        Database handle with the schema in place
    """
    database = Database(url)
    database.init_schema()
    return database
