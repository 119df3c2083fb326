"""SQLAlchemy storage backend.

All collections share one ``documents`` table keyed by (collection, key).
A batch commit is one database transaction: updates are guarded by the
version observed when the batch read the document, creates by the primary
key. Documents read but not written are re-checked under a row lock.
Any guard failing rolls the whole transaction back.
"""

import copy
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime, Integer, String, create_engine, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import BatchCommitConflict, StoreUnavailable
from .storage import MISSING_VERSION, Batch, Document, DocumentRef, StagedWrite


class Base(DeclarativeBase):
    pass


class DocumentTable(Base):
    """One stored document."""

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def create_session_factory(url: str, echo: bool = False) -> sessionmaker[Session]:
    """Create the engine, make sure the schema exists, and return a session factory."""
    engine = create_engine(url, echo=echo)
    Base.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False)


class SqlAlchemyBackend:
    """Storage backend on any database SQLAlchemy supports."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "SqlAlchemyBackend":
        return cls(create_session_factory(url, echo=echo))

    def get(self, collection: str, key: str) -> Optional[Document]:
        try:
            with self._session_factory() as session:
                row = session.get(DocumentTable, (collection, key))
                if row is None:
                    return None
                return Document(data=copy.deepcopy(row.data), version=row.version)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to read {collection}/{key}: {e}") from e

    def put(self, collection: str, key: str, data: dict) -> None:
        """Write a document outside any batch (provisioning)."""
        try:
            with self._session_factory.begin() as session:
                row = session.get(DocumentTable, (collection, key))
                if row is None:
                    session.add(
                        DocumentTable(
                            collection=collection,
                            key=key,
                            data=copy.deepcopy(data),
                            version=1,
                            updated_at=_now(),
                        )
                    )
                else:
                    row.data = copy.deepcopy(data)
                    row.version += 1
                    row.updated_at = _now()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Failed to write {collection}/{key}: {e}") from e

    def ping(self) -> bool:
        """Check that the database answers."""
        try:
            with self._session_factory() as session:
                session.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def batch(self) -> Batch:
        return Batch(self)

    def apply(self, reads: dict[DocumentRef, int], writes: dict[DocumentRef, StagedWrite]) -> None:
        try:
            with self._session_factory.begin() as session:
                for ref, expected in reads.items():
                    if ref in writes:
                        continue
                    if self._current_version(session, ref) != expected:
                        raise BatchCommitConflict(f"Document {ref[0]}/{ref[1]} changed since it was read")

                for ref, write in writes.items():
                    if write.op == "create":
                        self._create(session, ref, write, reads.get(ref, MISSING_VERSION))
                    else:
                        self._update(session, ref, write, reads.get(ref))
        except IntegrityError as e:
            raise BatchCommitConflict(f"Batch commit conflicted: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Batch commit failed: {e}") from e

    def _current_version(self, session: Session, ref: DocumentRef) -> int:
        # Row lock holds the checked version until the transaction ends.
        version = session.scalar(
            select(DocumentTable.version)
            .where(DocumentTable.collection == ref[0], DocumentTable.key == ref[1])
            .with_for_update()
        )
        return version if version is not None else MISSING_VERSION

    def _create(self, session: Session, ref: DocumentRef, write: StagedWrite, expected: int) -> None:
        if expected != MISSING_VERSION:
            raise BatchCommitConflict(f"Document {ref[0]}/{ref[1]} already exists")
        # Primary key violation on a concurrent create surfaces as IntegrityError.
        session.execute(
            insert(DocumentTable).values(
                collection=ref[0],
                key=ref[1],
                data=write.data,
                version=1,
                updated_at=_now(),
            )
        )

    def _update(self, session: Session, ref: DocumentRef, write: StagedWrite, expected: Optional[int]) -> None:
        stmt = update(DocumentTable).where(
            DocumentTable.collection == ref[0], DocumentTable.key == ref[1]
        )
        if expected is not None:
            stmt = stmt.where(DocumentTable.version == expected)
        stmt = stmt.values(
            data=write.data,
            version=DocumentTable.version + 1,
            updated_at=_now(),
        ).execution_options(synchronize_session=False)

        result = session.execute(stmt)
        if result.rowcount != 1:
            raise BatchCommitConflict(f"Document {ref[0]}/{ref[1]} changed or does not exist")


def _now() -> datetime:
    return datetime.now(timezone.utc)
