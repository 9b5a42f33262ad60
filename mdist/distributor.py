"""
Claim registry: the Merkle distributor state machine.

States per index:
    unclaimed ──claim()──▶ claimed   (terminal)

A claim checks the packed bitmap, verifies the Merkle proof against the
published root, sets the claimed bit and calls ``token.transfer(to, amount)``
as one unit under a lock. If the transfer fails the bit is cleared again and
the failure is re-raised, so the index stays claimable. If that rollback
cannot be saved, the bit stays set in memory as it is on disk,
ClaimStoreError is raised, and repair() releases the index later.

Thread-safe via threading.Lock. Bitmap optionally persisted via ClaimStore.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from mdist import HASH_SIZE, REASON_ALREADY_CLAIMED, REASON_INVALID_PROOF
from mdist.audit import ClaimLog
from mdist.bitmap import ClaimBitmap
from mdist.codec import Leaf, from_hex, normalize_address, to_hex
from mdist.ledger import InsufficientFunds
from mdist.merkle import verify
from mdist.store import ClaimStore, ClaimStoreError

logger = logging.getLogger(__name__)


class ClaimError(Exception):
    """A claim was rejected; nothing changed."""

    reason = "MerkleDistributor: claim rejected"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.reason)


class InvalidProof(ClaimError):
    """Leaf and proof do not hash to the published root."""

    reason = REASON_INVALID_PROOF


class AlreadyClaimed(ClaimError):
    """The index has already been redeemed."""

    reason = REASON_ALREADY_CLAIMED


class Transferer(Protocol):
    """The value-transfer collaborator."""

    def transfer(self, to: str, amount: int) -> None: ...


@dataclass(frozen=True)
class ClaimRecord:
    """Emitted once per successful claim."""

    index: int
    account: str
    amount: int


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of ``try_claim``: a record on success, the error otherwise."""

    record: ClaimRecord | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def reason(self) -> str:
        if self.error is None:
            return ""
        return getattr(self.error, "reason", str(self.error))


def _token_label(token: Any) -> str:
    address = getattr(token, "address", None)
    return address if isinstance(address, str) else repr(token)


class ClaimRegistry:
    """One published allow-list: root, token and claimed bitmap.

    Usage:
        registry = ClaimRegistry(ledger.wallet(distributor), dist.merkle_root)
        claim = dist.claim_for(alice)
        registry.claim(claim.index, alice, claim.amount, claim.proof)
        assert registry.is_claimed(claim.index)
    """

    def __init__(
        self,
        token: Transferer,
        merkle_root: bytes | str,
        *,
        leaf_count: int | None = None,
        store: ClaimStore | None = None,
        audit: ClaimLog | None = None,
    ) -> None:
        self._root = from_hex(merkle_root, HASH_SIZE)
        self._token = token
        self._leaf_count = leaf_count
        self._store = store
        self._audit = audit
        self._lock = threading.Lock()
        self._listeners: list[Callable[[ClaimRecord], None]] = []
        self._unpaid: set[int] = set()

        words: dict[int, int] = {}
        if store is not None:
            store.save_config(self.merkle_root_hex, _token_label(token), leaf_count)
            words = store.load_words()
        self._bitmap = ClaimBitmap(words)

    @property
    def merkle_root(self) -> bytes:
        return self._root

    @property
    def merkle_root_hex(self) -> str:
        return to_hex(self._root)

    @property
    def token(self) -> Transferer:
        return self._token

    @property
    def leaf_count(self) -> int | None:
        return self._leaf_count

    def is_claimed(self, index: int) -> bool:
        """Whether ``index`` has been redeemed. Unknown indices read False."""
        if isinstance(index, bool) or not isinstance(index, int):
            return False
        with self._lock:
            return self._bitmap.is_set(index)

    def claimed_indices(self) -> list[int]:
        with self._lock:
            return self._bitmap.indices()

    def add_listener(self, callback: Callable[[ClaimRecord], None]) -> None:
        """Register a callback receiving each ClaimRecord."""
        self._listeners.append(callback)

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save_words(self._bitmap.words)

    def claim(
        self,
        index: int,
        account: str,
        amount: int,
        proof: Sequence[bytes | str],
    ) -> ClaimRecord:
        """Redeem ``amount`` for ``account`` at ``index``.

        Raises:
            AlreadyClaimed: If the index was already redeemed.
            InvalidProof: If (index, account, amount, proof) does not match the root.
            InsufficientFunds: Surfaced from the token; the claim is rolled back.
            ClaimStoreError: The transfer failed and its rollback was not saved.
        """
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise InvalidProof()

        with self._lock:
            if self._bitmap.is_set(index):
                logger.warning("Rejected claim for index %d: already claimed", index)
                raise AlreadyClaimed()

            if not verify(Leaf(index, account, amount), index, proof, self._root):
                logger.warning("Rejected claim for index %d: invalid proof", index)
                raise InvalidProof()

            account = normalize_address(account)
            self._bitmap.set(index)
            try:
                self._persist()
                self._token.transfer(account, amount)
            except Exception:
                self._bitmap.clear(index)
                try:
                    self._persist()
                except Exception as e:
                    # Disk still says claimed; keep memory in agreement until repair().
                    self._bitmap.set(index)
                    self._unpaid.add(index)
                    logger.error("Index %d saved as claimed but not paid: %s", index, e)
                    raise ClaimStoreError(
                        f"Rollback of index {index} was not saved; call repair()"
                    ) from e
                logger.warning("Rolled back claim for index %d", index)
                raise

            record = ClaimRecord(index=index, account=account, amount=amount)
            self._emit(record)

        logger.info("Claimed index %d: %d to %s", index, amount, account)
        return record

    def try_claim(
        self,
        index: int,
        account: str,
        amount: int,
        proof: Sequence[bytes | str],
    ) -> ClaimResult:
        """Like ``claim`` but returns a ClaimResult instead of raising."""
        try:
            return ClaimResult(record=self.claim(index, account, amount, proof))
        except (ClaimError, InsufficientFunds) as e:
            return ClaimResult(error=e)

    def unpaid_indices(self) -> list[int]:
        """Indices held as claimed only because their rollback was not saved."""
        with self._lock:
            return sorted(self._unpaid)

    def repair(self) -> list[int]:
        """Save the pending rollbacks and make those indices claimable again.

        Returns:
            The released indices.

        Raises:
            Whatever the store raises if it still cannot be written; the
            indices then stay claimed.
        """
        with self._lock:
            released = sorted(self._unpaid)
            if not released:
                return []
            for index in released:
                self._bitmap.clear(index)
            try:
                self._persist()
            except Exception:
                for index in released:
                    self._bitmap.set(index)
                raise
            self._unpaid.clear()
        logger.info("Released unpaid indices %s", released)
        return released

    def _emit(self, record: ClaimRecord) -> None:
        # The transfer has happened; observers must not undo it.
        if self._audit is not None:
            try:
                self._audit.record(record)
            except Exception:
                logger.exception("Failed to write claim log for index %d", record.index)
        for callback in list(self._listeners):
            try:
                callback(record)
            except Exception:
                logger.exception("Claim listener failed for index %d", record.index)
