"""
Tests for the claim registry: state machine, ledger, bitmap, persistence.

All tests use the in-process TokenLedger: no external chain required.
"""

from __future__ import annotations

import json
import threading
from unittest.mock import MagicMock

import pytest
from eth_utils import to_checksum_address

from mdist import (
    REASON_ALREADY_CLAIMED,
    REASON_INSUFFICIENT_FUNDS,
    REASON_INVALID_PROOF,
)
from mdist.audit import ClaimLog, ClaimLogError
from mdist.balance_map import parse_balance_map
from mdist.bitmap import ClaimBitmap
from mdist.codec import Leaf
from mdist.distributor import (
    AlreadyClaimed,
    ClaimRecord,
    ClaimRegistry,
    InvalidProof,
)
from mdist.ledger import InsufficientFunds, InvalidAmount, LedgerError, TokenLedger
from mdist.merkle import BalanceTree
from mdist.store import ClaimStore, ClaimStoreError


A = to_checksum_address("0x" + "a1" * 20)
B = to_checksum_address("0x" + "b2" * 20)
DISTRIBUTOR = to_checksum_address("0x" + "d0" * 20)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def dist():
    """Two-account allow-list {A: 100, B: 101}."""
    return parse_balance_map({A: 100, B: 101})


@pytest.fixture
def ledger():
    token = TokenLedger("token", "TOKEN")
    token.set_balance(DISTRIBUTOR, 201)
    return token


@pytest.fixture
def registry(dist, ledger):
    return ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root, leaf_count=2)


class FlakyStore(ClaimStore):
    """ClaimStore whose save_words fails on the given call numbers."""

    def __init__(self, path, fail_on=()):
        super().__init__(path)
        self.calls = 0
        self.fail_on = set(fail_on)

    def save_words(self, words):
        self.calls += 1
        if self.calls in self.fail_on:
            raise OSError("disk full")
        super().save_words(words)


def _claim(registry, dist, account):
    c = dist.claim_for(account)
    return registry.claim(c.index, account, c.amount, c.proof)


# ---------------------------------------------------------------------------
# TestClaimRegistry
# ---------------------------------------------------------------------------

class TestClaimRegistry:

    def test_publication(self, registry, dist, ledger):
        assert registry.merkle_root_hex == dist.merkle_root
        assert len(registry.merkle_root) == 32
        assert registry.token.address == DISTRIBUTOR
        assert registry.leaf_count == 2

    def test_zero_root_rejects_empty_proof(self, ledger):
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), "0x" + "00" * 32)
        with pytest.raises(InvalidProof, match="Invalid proof"):
            registry.claim(0, A, 10, [])

    def test_bad_root_rejected(self, ledger):
        with pytest.raises(ValueError):
            ClaimRegistry(ledger.wallet(DISTRIBUTOR), "0x1234")

    def test_successful_claims(self, registry, dist, ledger):
        record = _claim(registry, dist, A)
        assert record == ClaimRecord(index=0, account=A, amount=100)
        assert ledger.balance_of(A) == 100

        record = _claim(registry, dist, B)
        assert record == ClaimRecord(index=1, account=B, amount=101)
        assert ledger.balance_of(B) == 101
        assert ledger.balance_of(DISTRIBUTOR) == 0
        assert registry.is_claimed(0) and registry.is_claimed(1)

    def test_is_claimed(self, registry, dist):
        assert not registry.is_claimed(0)
        assert not registry.is_claimed(1)
        _claim(registry, dist, A)
        assert registry.is_claimed(0)
        assert not registry.is_claimed(1)

    def test_is_claimed_unknown_index(self, registry):
        assert not registry.is_claimed(2)
        assert not registry.is_claimed(10**9)
        assert not registry.is_claimed(-1)
        assert not registry.is_claimed("0")

    def test_cannot_claim_twice(self, registry, dist, ledger):
        _claim(registry, dist, A)
        with pytest.raises(AlreadyClaimed, match="Drop already claimed"):
            _claim(registry, dist, A)
        assert ledger.balance_of(A) == 100

    @pytest.mark.parametrize("order", [(A, B), (B, A)])
    def test_cannot_claim_twice_after_other(self, registry, dist, order):
        first, second = order
        _claim(registry, dist, first)
        _claim(registry, dist, second)
        with pytest.raises(AlreadyClaimed):
            _claim(registry, dist, first)

    def test_cannot_claim_with_other_proof(self, registry, dist, ledger):
        proof_a = dist.claim_for(A).proof
        with pytest.raises(InvalidProof):
            registry.claim(1, B, 101, proof_a)
        assert not registry.is_claimed(1)
        assert ledger.balance_of(DISTRIBUTOR) == 201

    def test_cannot_claim_more_than_proof(self, registry, dist):
        proof_a = dist.claim_for(A).proof
        with pytest.raises(InvalidProof):
            registry.claim(0, A, 101, proof_a)
        assert not registry.is_claimed(0)

    def test_wrong_index_or_account(self, registry, dist):
        c = dist.claim_for(A)
        with pytest.raises(InvalidProof):
            registry.claim(1, A, c.amount, c.proof)
        with pytest.raises(InvalidProof):
            registry.claim(0, B, c.amount, c.proof)
        with pytest.raises(InvalidProof):
            registry.claim(-1, A, c.amount, c.proof)
        with pytest.raises(InvalidProof):
            registry.claim(0, "bogus", c.amount, c.proof)

    def test_already_claimed_checked_first(self, registry, dist):
        _claim(registry, dist, A)
        with pytest.raises(AlreadyClaimed):
            registry.claim(0, A, 999, [])

    def test_insufficient_funds_rolls_back(self, registry, dist, ledger):
        ledger.set_balance(DISTRIBUTOR, 99)
        with pytest.raises(InsufficientFunds, match="transfer amount exceeds balance"):
            _claim(registry, dist, A)
        assert not registry.is_claimed(0)
        assert ledger.balance_of(A) == 0

        ledger.set_balance(DISTRIBUTOR, 100)
        _claim(registry, dist, A)
        assert registry.is_claimed(0)
        assert ledger.balance_of(A) == 100

    def test_any_transfer_error_rolls_back(self, dist):
        token = MagicMock()
        token.transfer.side_effect = RuntimeError("ledger offline")
        registry = ClaimRegistry(token, dist.merkle_root)
        with pytest.raises(RuntimeError, match="offline"):
            _claim(registry, dist, A)
        assert not registry.is_claimed(0)

    def test_transfer_called_once_with_amount(self, dist):
        token = MagicMock()
        registry = ClaimRegistry(token, dist.merkle_root)
        _claim(registry, dist, B)
        token.transfer.assert_called_once_with(B, 101)

    def test_lowercase_account_normalized(self, registry, dist, ledger):
        c = dist.claim_for(A)
        record = registry.claim(c.index, A.lower(), c.amount, c.proof)
        assert record.account == A
        assert ledger.balance_of(A) == 100

    def test_listeners(self, registry, dist):
        seen = []
        registry.add_listener(seen.append)
        registry.add_listener(lambda r: 1 / 0)  # a failing observer is ignored
        _claim(registry, dist, A)
        assert seen == [ClaimRecord(0, A, 100)]
        assert registry.is_claimed(0)

    def test_claimed_indices(self, registry, dist):
        _claim(registry, dist, B)
        assert registry.claimed_indices() == [1]


# ---------------------------------------------------------------------------
# TestTryClaim
# ---------------------------------------------------------------------------

class TestTryClaim:

    def test_success(self, registry, dist):
        c = dist.claim_for(A)
        result = registry.try_claim(c.index, A, c.amount, c.proof)
        assert result.ok
        assert result.record == ClaimRecord(0, A, 100)
        assert result.reason == ""

    def test_reasons(self, registry, dist, ledger):
        c = dist.claim_for(A)
        bad = registry.try_claim(0, A, 1, c.proof)
        assert not bad.ok
        assert isinstance(bad.error, InvalidProof)
        assert bad.reason == REASON_INVALID_PROOF

        ledger.set_balance(DISTRIBUTOR, 0)
        broke = registry.try_claim(0, A, 100, c.proof)
        assert broke.reason == REASON_INSUFFICIENT_FUNDS
        assert not registry.is_claimed(0)

        ledger.set_balance(DISTRIBUTOR, 100)
        assert registry.try_claim(0, A, 100, c.proof).ok
        again = registry.try_claim(0, A, 100, c.proof)
        assert again.reason == REASON_ALREADY_CLAIMED


# ---------------------------------------------------------------------------
# TestConcurrency
# ---------------------------------------------------------------------------

class TestConcurrency:

    def test_one_winner_per_index(self, dist, ledger):
        ledger.set_balance(DISTRIBUTOR, 10_000)
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root)
        c = dist.claim_for(A)
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def claimer():
            barrier.wait()
            result = registry.try_claim(c.index, A, c.amount, c.proof)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=claimer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(r.ok for r in results) == 1
        assert all(isinstance(r.error, AlreadyClaimed) for r in results if not r.ok)
        assert ledger.balance_of(A) == 100
        assert ledger.balance_of(DISTRIBUTOR) == 10_000 - 100

    def test_many_indices_in_parallel(self, ledger):
        accounts = [to_checksum_address("0x" + f"{i + 1:040x}") for i in range(40)]
        dist = parse_balance_map({a: 1 for a in accounts})
        ledger.set_balance(DISTRIBUTOR, 40)
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root)
        errors = []

        def worker(chunk):
            try:
                for account in chunk:
                    c = dist.claim_for(account)
                    registry.claim(c.index, account, c.amount, c.proof)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=worker, args=(accounts[i::4],)) for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert registry.claimed_indices() == list(range(40))
        assert ledger.balance_of(DISTRIBUTOR) == 0


# ---------------------------------------------------------------------------
# TestLargeTree
# ---------------------------------------------------------------------------

class TestLargeTree:

    def test_ten_accounts(self, ledger):
        accounts = [to_checksum_address("0x" + f"{i + 1:040x}") for i in range(10)]
        dist = parse_balance_map({a: i + 1 for i, a in enumerate(accounts)})
        ledger.set_balance(DISTRIBUTOR, 55)
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root)

        for i in (4, 9):
            record = _claim(registry, dist, accounts[i])
            assert record == ClaimRecord(i, accounts[i], i + 1)
            with pytest.raises(AlreadyClaimed):
                _claim(registry, dist, accounts[i])
        assert registry.claimed_indices() == [4, 9]
        assert ledger.balance_of(DISTRIBUTOR) == 55 - 5 - 10

    def test_multi_word_bitmap_survives_reopen(self, tmp_path, ledger):
        # repeated accounts, one leaf per index
        accounts = [A, B, to_checksum_address("0x" + "c3" * 20)]
        leaves = [Leaf(i, accounts[i % 3], 100) for i in range(1200)]
        tree = BalanceTree.from_balances(leaves)
        ledger.set_balance(DISTRIBUTOR, 10_000)
        path = tmp_path / "large.json"
        registry = ClaimRegistry(
            ledger.wallet(DISTRIBUTOR), tree.root_hex, leaf_count=1200, store=ClaimStore(path)
        )

        claimed = [4, 9, 255, 256, 700, 1199]
        for i in claimed:
            leaf = leaves[i]
            proof = tree.get_leaf_proof(i, leaf.account, leaf.amount)
            assert registry.claim(i, leaf.account, leaf.amount, proof).index == i

        data = json.loads(path.read_text())
        assert set(data["words"]) == {"0", "1", "2", "4"}

        reopened = ClaimRegistry(
            ledger.wallet(DISTRIBUTOR), tree.root_hex, store=ClaimStore(path)
        )
        assert reopened.claimed_indices() == claimed
        assert not reopened.is_claimed(257)
        for i in claimed:
            leaf = leaves[i]
            proof = tree.get_leaf_proof(i, leaf.account, leaf.amount)
            with pytest.raises(AlreadyClaimed):
                reopened.claim(i, leaf.account, leaf.amount, proof)

        leaf = leaves[1000]
        reopened.claim(1000, leaf.account, leaf.amount, tree.get_proof(1000))
        assert reopened.is_claimed(1000)
        assert ledger.balance_of(DISTRIBUTOR) == 10_000 - 7 * 100


# ---------------------------------------------------------------------------
# TestTokenLedger
# ---------------------------------------------------------------------------

class TestTokenLedger:

    def test_transfer(self, ledger):
        ledger.transfer(DISTRIBUTOR, A, 50)
        assert ledger.balance_of(A) == 50
        assert ledger.balance_of(DISTRIBUTOR) == 151
        assert ledger.total_supply == 201

    def test_insufficient_is_atomic(self, ledger):
        with pytest.raises(InsufficientFunds):
            ledger.transfer(DISTRIBUTOR, A, 202)
        assert ledger.balance_of(DISTRIBUTOR) == 201
        assert ledger.balance_of(A) == 0

    def test_invalid_amount(self, ledger):
        with pytest.raises(LedgerError):
            ledger.transfer(DISTRIBUTOR, A, -1)
        with pytest.raises(LedgerError):
            ledger.set_balance(A, 1.5)

    def test_negative_amount_is_value_error(self, ledger):
        with pytest.raises(ValueError):
            ledger.transfer(DISTRIBUTOR, A, -1)
        with pytest.raises(InvalidAmount):
            ledger.wallet(DISTRIBUTOR).transfer(A, -5)
        assert ledger.balance_of(DISTRIBUTOR) == 201
        assert not issubclass(InsufficientFunds, ValueError)

    def test_wallet(self, ledger):
        wallet = ledger.wallet(DISTRIBUTOR.lower())
        assert wallet.address == DISTRIBUTOR
        wallet.transfer(B, 1)
        assert wallet.balance == 200
        assert ledger.balance_of(B) == 1


# ---------------------------------------------------------------------------
# TestClaimBitmap
# ---------------------------------------------------------------------------

class TestClaimBitmap:

    def test_packing(self):
        bitmap = ClaimBitmap()
        for i in (0, 1, 255, 256, 1000):
            bitmap.set(i)
        words = bitmap.words
        assert set(words) == {0, 1, 3}
        assert words[0] == (1 << 0) | (1 << 1) | (1 << 255)
        assert words[1] == 1
        assert words[3] == 1 << (1000 - 768)
        assert bitmap.indices() == [0, 1, 255, 256, 1000]
        assert len(bitmap) == 5

    def test_clear(self):
        bitmap = ClaimBitmap()
        bitmap.set(300)
        bitmap.clear(300)
        assert not bitmap.is_set(300)
        assert bitmap.words == {}

    def test_absent_words_unclaimed(self):
        bitmap = ClaimBitmap({2: 0b100})
        assert bitmap.is_set(514)
        assert not bitmap.is_set(513)
        assert not bitmap.is_set(10**12)
        assert not bitmap.is_set(-3)

    def test_rejects_oversized_word(self):
        with pytest.raises(ValueError):
            ClaimBitmap({0: 1 << 256})


# ---------------------------------------------------------------------------
# TestClaimStore
# ---------------------------------------------------------------------------

class TestClaimStore:

    def test_persists_across_reopen(self, tmp_path, dist, ledger):
        store = ClaimStore(tmp_path / "drop.json")
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root, store=store)
        _claim(registry, dist, B)

        reopened = ClaimRegistry(
            ledger.wallet(DISTRIBUTOR), dist.merkle_root, store=ClaimStore(tmp_path / "drop.json")
        )
        assert reopened.is_claimed(1)
        assert not reopened.is_claimed(0)
        with pytest.raises(AlreadyClaimed):
            _claim(reopened, dist, B)

    def test_file_layout(self, tmp_path, dist, ledger):
        path = tmp_path / "drop.json"
        registry = ClaimRegistry(
            ledger.wallet(DISTRIBUTOR), dist.merkle_root, leaf_count=2, store=ClaimStore(path)
        )
        _claim(registry, dist, A)
        data = json.loads(path.read_text())
        assert data["merkle_root"] == dist.merkle_root
        assert data["token"] == DISTRIBUTOR
        assert data["leaf_count"] == 2
        assert data["words"] == {"0": "0x1"}

    def test_rollback_is_persisted(self, tmp_path, dist, ledger):
        path = tmp_path / "drop.json"
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root, store=ClaimStore(path))
        ledger.set_balance(DISTRIBUTOR, 0)
        with pytest.raises(InsufficientFunds):
            _claim(registry, dist, A)
        assert ClaimStore(path).load_words() == {}

    def test_unsaved_rollback_keeps_index_claimed(self, tmp_path, dist, ledger):
        path = tmp_path / "drop.json"
        # call 1 saves the claimed bit, call 2 (the rollback) fails
        store = FlakyStore(path, fail_on={2})
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root, store=store)
        ledger.set_balance(DISTRIBUTOR, 0)

        with pytest.raises(ClaimStoreError, match="repair") as exc:
            _claim(registry, dist, A)
        assert isinstance(exc.value.__cause__, OSError)
        assert isinstance(exc.value.__cause__.__context__, InsufficientFunds)

        assert registry.is_claimed(0)
        assert registry.unpaid_indices() == [0]
        assert ClaimStore(path).load_words() == {0: 1}
        assert ledger.balance_of(A) == 0

        assert registry.repair() == [0]
        assert not registry.is_claimed(0)
        assert registry.unpaid_indices() == []
        assert ClaimStore(path).load_words() == {}

        ledger.set_balance(DISTRIBUTOR, 100)
        _claim(registry, dist, A)
        assert ledger.balance_of(A) == 100

    def test_repair_keeps_bits_when_store_still_fails(self, tmp_path, dist, ledger):
        store = FlakyStore(tmp_path / "drop.json", fail_on={2, 3})
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root, store=store)
        ledger.set_balance(DISTRIBUTOR, 0)
        with pytest.raises(ClaimStoreError):
            _claim(registry, dist, B)

        with pytest.raises(OSError):
            registry.repair()
        assert registry.is_claimed(1)
        assert registry.unpaid_indices() == [1]
        assert registry.repair() == [1]
        assert registry.repair() == []

    def test_root_mismatch(self, tmp_path, dist, ledger):
        path = tmp_path / "drop.json"
        ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root, store=ClaimStore(path))
        other = parse_balance_map({A: 1})
        with pytest.raises(ClaimStoreError, match="belongs to root"):
            ClaimRegistry(ledger.wallet(DISTRIBUTOR), other.merkle_root, store=ClaimStore(path))

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "drop.json"
        path.write_text("{broken")
        with pytest.raises(ClaimStoreError):
            ClaimStore(path).load()

    def test_uninitialized_save(self, tmp_path):
        with pytest.raises(ClaimStoreError, match="not initialized"):
            ClaimStore(tmp_path / "none.json").save_words({0: 1})


# ---------------------------------------------------------------------------
# TestClaimLog
# ---------------------------------------------------------------------------

class TestClaimLog:

    def test_records_claims(self, tmp_path, dist, ledger):
        log = ClaimLog("drop-1", base_dir=tmp_path)
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root, audit=log)
        _claim(registry, dist, A)
        _claim(registry, dist, B)

        assert len(log) == 2
        first, second = log.entries
        assert (first.index, first.account, first.amount) == (0, A, "100")
        assert second.prev_hash == first.entry_hash
        assert first.prev_hash == "0" * 64
        assert log.verify_chain()

    def test_failed_claims_not_logged(self, tmp_path, dist, ledger):
        log = ClaimLog("drop-2", base_dir=tmp_path)
        registry = ClaimRegistry(ledger.wallet(DISTRIBUTOR), dist.merkle_root, audit=log)
        registry.try_claim(0, A, 1, dist.claim_for(A).proof)
        assert len(log) == 0

    def test_persistence_and_tamper(self, tmp_path):
        log = ClaimLog("drop-3", base_dir=tmp_path)
        log.record(ClaimRecord(0, A, 100))
        log.record(ClaimRecord(1, B, 101))

        reloaded = ClaimLog("drop-3", base_dir=tmp_path)
        assert len(reloaded) == 2
        assert reloaded.verify_chain()

        raw = json.loads(reloaded.path.read_text())
        raw[0]["amount"] = "1000"
        reloaded.path.write_text(json.dumps(raw))
        assert not ClaimLog("drop-3", base_dir=tmp_path).verify_chain()

    @pytest.mark.parametrize("content", ["[{\"sequence\": 0", "{}", "5", "[{\"index\": 0}]"])
    def test_corrupt_file_raises(self, tmp_path, content):
        log = ClaimLog("drop-4", base_dir=tmp_path)
        log.record(ClaimRecord(0, A, 100))
        log.record(ClaimRecord(1, B, 101))
        log.path.write_text(content)

        with pytest.raises(ClaimLogError, match="Corrupt claim log"):
            ClaimLog("drop-4", base_dir=tmp_path)
        assert log.path.read_text() == content

    def test_invalid_name(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid claim log name"):
            ClaimLog("../escape", base_dir=tmp_path)
