"""Document storage with an atomic, conditional multi-record batch.

Documents live in named collections and carry a version number that every
committed write increments. A missing document has version 0. A batch
remembers the version of everything it reads and the commit only goes
through if none of those versions moved in the meantime.
"""

import copy
import threading
from dataclasses import dataclass
from typing import Literal, Optional, Protocol

from .errors import BatchCommitConflict

MISSING_VERSION = 0

DocumentRef = tuple[str, str]


@dataclass
class Document:
    """A stored document and its version."""

    data: dict
    version: int


@dataclass
class StagedWrite:
    """A write waiting for the batch commit."""

    op: Literal["create", "update"]
    data: dict


class StorageBackend(Protocol):
    """Interface every storage backend implements."""

    def get(self, collection: str, key: str) -> Optional[Document]:
        """Read a document, or None when it does not exist.

        Raises:
            StoreUnavailable: If the backend cannot be reached
        """
        ...

    def apply(self, reads: dict[DocumentRef, int], writes: dict[DocumentRef, StagedWrite]) -> None:
        """Apply staged writes atomically if every read version still holds.

        Raises:
            BatchCommitConflict: If a read version changed, a created document
                exists, or an updated document is missing
            StoreUnavailable: If the backend cannot be reached
        """
        ...

    def batch(self) -> "Batch":
        """Open a new batch against this backend."""
        ...


class Batch:
    """Unit of work: reads through, stages writes, commits exactly once.

    Reads of documents already staged in this batch return the staged data,
    so later steps see the effect of earlier ones.
    """

    def __init__(self, backend: StorageBackend):
        self._backend = backend
        self._reads: dict[DocumentRef, int] = {}
        self._writes: dict[DocumentRef, StagedWrite] = {}
        self._committed = False

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def staged(self) -> int:
        """Number of documents with a staged write."""
        return len(self._writes)

    def get(self, collection: str, key: str) -> Optional[dict]:
        ref = (collection, key)
        if ref in self._writes:
            return copy.deepcopy(self._writes[ref].data)
        document = self._backend.get(collection, key)
        self._reads.setdefault(ref, document.version if document else MISSING_VERSION)
        if document is None:
            return None
        return copy.deepcopy(document.data)

    def update(self, collection: str, key: str, data: dict) -> None:
        self._check_open()
        ref = (collection, key)
        staged = self._writes.get(ref)
        # Updating a document created in this same batch keeps it a create.
        op = staged.op if staged else "update"
        self._writes[ref] = StagedWrite(op=op, data=copy.deepcopy(data))

    def create(self, collection: str, key: str, data: dict) -> None:
        self._check_open()
        ref = (collection, key)
        if ref in self._writes:
            raise BatchCommitConflict(f"Document {collection}/{key} already staged in this batch")
        self._writes[ref] = StagedWrite(op="create", data=copy.deepcopy(data))

    def commit(self) -> None:
        """Apply every staged write, or none of them."""
        self._check_open()
        self._committed = True
        self._backend.apply(dict(self._reads), dict(self._writes))

    def _check_open(self) -> None:
        if self._committed:
            raise RuntimeError("Batch already committed")


class InMemoryBackend:
    """Process-local backend for development and tests.

    A single lock covers the version check and the writes in ``apply``,
    which makes the commit atomic within the process.
    """

    def __init__(self):
        self._documents: dict[DocumentRef, Document] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, key: str) -> Optional[Document]:
        with self._lock:
            document = self._documents.get((collection, key))
            if document is None:
                return None
            return Document(data=copy.deepcopy(document.data), version=document.version)

    def put(self, collection: str, key: str, data: dict) -> None:
        """Write a document outside any batch (provisioning)."""
        with self._lock:
            current = self._documents.get((collection, key))
            version = current.version + 1 if current else 1
            self._documents[(collection, key)] = Document(data=copy.deepcopy(data), version=version)

    def ping(self) -> bool:
        return True

    def batch(self) -> Batch:
        return Batch(self)

    def apply(self, reads: dict[DocumentRef, int], writes: dict[DocumentRef, StagedWrite]) -> None:
        with self._lock:
            for ref, expected in reads.items():
                if self._version(ref) != expected:
                    raise BatchCommitConflict(f"Document {ref[0]}/{ref[1]} changed since it was read")
            for ref, write in writes.items():
                exists = ref in self._documents
                if write.op == "create" and exists:
                    raise BatchCommitConflict(f"Document {ref[0]}/{ref[1]} already exists")
                if write.op == "update" and not exists:
                    raise BatchCommitConflict(f"Document {ref[0]}/{ref[1]} does not exist")

            for ref, write in writes.items():
                version = self._version(ref) + 1
                self._documents[ref] = Document(data=copy.deepcopy(write.data), version=version)

    def _version(self, ref: DocumentRef) -> int:
        document = self._documents.get(ref)
        return document.version if document else MISSING_VERSION
