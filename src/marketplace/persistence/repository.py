"""Document repository with optimistic units of work.

The marketplace talks to its document store through this port. Every
write goes through a UnitOfWork:

    uow = repo.begin()
    contract = uow.contract("c-1")         # read, version remembered
    contract.state = ContractState.FUNDS_HELD
    uow.save(contract)                     # staged, not yet visible
    uow.commit()                           # all-or-nothing

Commit is a compare-and-set over every document the unit read: if any of
them changed since it was read, nothing is written and
ConcurrentModification is raised. This is the version check that keeps
two acceptances of the same contract from both landing.

InMemoryRepository is the reference adapter (tests, single process).
Stored documents are deep-copied on every read and write so no caller
ever holds a reference to the stored state.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, TypeVar

from marketplace.errors import ConcurrentModification, NotFound, PersistenceFailure
from marketplace.models.actor import Actor
from marketplace.models.contract import Contract, ContractState, Proposal
from marketplace.models.escrow import EscrowTransaction

T = TypeVar("T")

# Document type → (collection name, id attribute)
_COLLECTIONS: dict[type, tuple[str, str]] = {
    Contract: ("contracts", "contract_id"),
    Proposal: ("proposals", "proposal_id"),
    EscrowTransaction: ("escrows", "transaction_id"),
    Actor: ("actors", "actor_id"),
}

_Key = tuple[str, str]


def _key_of(doc: Any) -> _Key:
    try:
        collection, id_attr = _COLLECTIONS[type(doc)]
    except KeyError:
        raise TypeError(f"Not a repository document: {type(doc).__name__}") from None
    return collection, getattr(doc, id_attr)


class DocumentStore(Protocol):
    """What a UnitOfWork needs from a store: versioned reads and an
    atomic compare-and-set of staged writes."""

    def load_document(self, key: _Key) -> Optional[Any]: ...

    def select_documents(self, collection: str, predicate: Any) -> list[Any]: ...

    def compare_and_set(
        self, observed: dict[_Key, Optional[int]], staged: dict[_Key, Any],
    ) -> None: ...


class Repository(DocumentStore, Protocol):
    """Persistence port used by every marketplace service."""

    def begin(self) -> UnitOfWork: ...

    def get_contract(self, contract_id: str) -> Optional[Contract]: ...

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]: ...

    def get_escrow(self, transaction_id: str) -> Optional[EscrowTransaction]: ...

    def get_actor(self, actor_id: str) -> Optional[Actor]: ...

    def proposals_for_contract(self, contract_id: str) -> list[Proposal]: ...

    def escrows_for_contract(self, contract_id: str) -> list[EscrowTransaction]: ...

    def escrows_for_client(
        self, client_id: str, since: Optional[datetime] = None,
    ) -> list[EscrowTransaction]: ...

    def all_escrows(self) -> list[EscrowTransaction]: ...

    def contracts_in_state(self, state: ContractState) -> list[Contract]: ...

    def actors_with_role(self, role: Any) -> list[Actor]: ...


class UnitOfWork:
    """A set of reads and staged writes committed atomically.

    Reads return private working copies. Only documents passed to
    ``add`` or ``save`` are written on commit. A unit can be committed
    once; domain events collected in ``events`` are published by the
    caller after a successful commit.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._observed: dict[_Key, Optional[int]] = {}
        self._loaded: dict[_Key, Any] = {}
        self._staged: dict[_Key, Any] = {}
        self._committed = False
        self.events: list[Any] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, key: _Key) -> Optional[Any]:
        if key in self._loaded:
            return self._loaded[key]
        doc = self._store.load_document(key)
        self._observed[key] = doc.version if doc is not None else None
        self._loaded[key] = doc
        return doc

    def _require(self, key: _Key, label: str) -> Any:
        doc = self._load(key)
        if doc is None:
            raise NotFound(f"{label} not found: {key[1]}")
        return doc

    def contract(self, contract_id: str) -> Contract:
        return self._require(("contracts", contract_id), "Contract")

    def proposal(self, proposal_id: str) -> Proposal:
        return self._require(("proposals", proposal_id), "Proposal")

    def escrow(self, transaction_id: str) -> EscrowTransaction:
        return self._require(("escrows", transaction_id), "Escrow transaction")

    def actor(self, actor_id: str) -> Optional[Actor]:
        return self._load(("actors", actor_id))

    def proposals_for_contract(self, contract_id: str) -> list[Proposal]:
        """All proposals on a contract, each tracked by this unit."""
        found = self._store.select_documents(
            "proposals", lambda p: p.contract_id == contract_id,
        )
        return self._track_all(found)

    def _track_all(self, docs: Iterable[Any]) -> list[Any]:
        result = []
        for doc in docs:
            key = _key_of(doc)
            if key not in self._loaded:
                self._observed[key] = doc.version
                self._loaded[key] = doc
            result.append(self._loaded[key])
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, doc: Any) -> None:
        """Stage a new document. Commit fails if the id already exists."""
        key = _key_of(doc)
        if key not in self._observed:
            self._observed[key] = None
        self._loaded[key] = doc
        self._staged[key] = doc

    def save(self, doc: Any) -> None:
        """Stage an update to a document previously read by this unit."""
        key = _key_of(doc)
        if key not in self._observed:
            raise ValueError(f"Document was not read by this unit: {key}")
        self._staged[key] = doc

    @property
    def has_changes(self) -> bool:
        return bool(self._staged)

    def commit(self) -> None:
        """Atomically apply staged writes if nothing read has changed."""
        if self._committed:
            raise ValueError("Unit of work already committed")
        self._committed = True
        if not self._staged:
            return
        self._store.compare_and_set(dict(self._observed), dict(self._staged))


class InMemoryRepository:
    """Thread-safe in-memory document store.

    ``available`` can be switched off to simulate an unreachable
    substrate: every call then raises PersistenceFailure.
    """

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, Any]] = {name: {} for name, _ in _COLLECTIONS.values()}
        self._lock = threading.RLock()
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise PersistenceFailure("Document store unavailable")

    def begin(self) -> UnitOfWork:
        self._check_available()
        return UnitOfWork(self)

    # ------------------------------------------------------------------
    # Plain reads (copies, not tracked)
    # ------------------------------------------------------------------

    def load_document(self, key: _Key) -> Optional[Any]:
        self._check_available()
        with self._lock:
            doc = self._docs[key[0]].get(key[1])
            return copy.deepcopy(doc) if doc is not None else None

    def select_documents(self, collection: str, predicate: Any) -> list[Any]:
        self._check_available()
        with self._lock:
            return [copy.deepcopy(d) for d in self._docs[collection].values() if predicate(d)]

    def get_contract(self, contract_id: str) -> Optional[Contract]:
        return self.load_document(("contracts", contract_id))

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        return self.load_document(("proposals", proposal_id))

    def get_escrow(self, transaction_id: str) -> Optional[EscrowTransaction]:
        return self.load_document(("escrows", transaction_id))

    def get_actor(self, actor_id: str) -> Optional[Actor]:
        return self.load_document(("actors", actor_id))

    def proposals_for_contract(self, contract_id: str) -> list[Proposal]:
        found = self.select_documents("proposals", lambda p: p.contract_id == contract_id)
        return sorted(found, key=lambda p: (p.submitted_utc is None, p.submitted_utc))

    def escrows_for_contract(self, contract_id: str) -> list[EscrowTransaction]:
        return self.select_documents("escrows", lambda e: e.contract_id == contract_id)

    def escrows_for_client(
        self,
        client_id: str,
        since: Optional[datetime] = None,
    ) -> list[EscrowTransaction]:
        def match(e: EscrowTransaction) -> bool:
            if e.client_id != client_id:
                return False
            if since is None:
                return True
            return e.created_utc is not None and e.created_utc >= since

        return self.select_documents("escrows", match)

    def all_escrows(self) -> list[EscrowTransaction]:
        return self.select_documents("escrows", lambda e: True)

    def contracts_in_state(self, state: ContractState) -> list[Contract]:
        return self.select_documents("contracts", lambda c: c.state == state)

    def actors_with_role(self, role: Any) -> list[Actor]:
        return self.select_documents("actors", lambda a: a.role == role)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def compare_and_set(
        self,
        observed: dict[_Key, Optional[int]],
        staged: dict[_Key, Any],
    ) -> None:
        """Write ``staged`` only if every ``observed`` version is still current."""
        self._check_available()
        with self._lock:
            for (collection, doc_id), version in observed.items():
                current = self._docs[collection].get(doc_id)
                current_version = current.version if current is not None else None
                if current_version != version:
                    raise ConcurrentModification(
                        f"{collection}/{doc_id} changed during unit of work "
                        f"(read version {version}, now {current_version})"
                    )
            for (collection, doc_id), doc in staged.items():
                doc.version = (doc.version or 0) + 1
                self._docs[collection][doc_id] = copy.deepcopy(doc)
