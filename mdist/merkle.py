"""
Merkle tree construction and proof generation/verification.

Pair hashing is commutative:
    Internal hash: Keccak-256(min(a, b) + max(a, b))

Siblings are sorted byte-wise before hashing, so a proof is a flat list of
sibling digests with no left/right tags.

Odd layer: the trailing node is promoted unchanged to the next layer (no
duplication), so proofs for such nodes are one sibling shorter.
"""

from __future__ import annotations

import hmac
import logging
from typing import Sequence

from eth_utils import keccak

from mdist import HASH_SIZE
from mdist.codec import Leaf, from_hex, leaf_hash, to_hex

logger = logging.getLogger(__name__)


class IndexOutOfRange(IndexError):
    """Proof requested for an index outside the built leaf sequence."""

    reason = "IndexOutOfRange: leaf index outside the tree"


def combine(a: bytes, b: bytes) -> bytes:
    """Hash two nodes in canonical (sorted) order."""
    if a <= b:
        return keccak(a + b)
    return keccak(b + a)


def verify_proof(leaf: bytes, proof: Sequence[bytes], root: bytes) -> bool:
    """Fold ``proof`` onto a leaf hash and compare against ``root``.

    Fail-closed: returns False on any error.
    """
    try:
        current = bytes(leaf)
        for sibling in proof:
            current = combine(current, from_hex(sibling, HASH_SIZE))
        return hmac.compare_digest(current, from_hex(root, HASH_SIZE))
    except Exception:
        return False


def verify(leaf: Leaf, index: int, proof: Sequence[bytes], root: bytes) -> bool:
    """Verify that ``(index, leaf.account, leaf.amount)`` is committed by ``root``.

    The leaf hash is recomputed from ``index`` rather than ``leaf.index``, so
    a proof presented for the wrong position fails. Never raises.
    """
    try:
        node = leaf_hash(index, leaf.account, leaf.amount)
    except Exception:
        return False
    return verify_proof(node, proof, root)


class MerkleTree:
    """Merkle tree over an ordered sequence of 32-byte leaf hashes.

    Usage:
        tree = MerkleTree.from_leaves([h0, h1, h2])
        root = tree.root_hex  # 0x-prefixed 64-char hex
        proof = tree.get_proof(2)
        assert verify_proof(h2, proof, tree.root)
    """

    def __init__(self, layers: list[list[bytes]]) -> None:
        self._layers = layers

    @classmethod
    def from_leaves(cls, leaf_hashes: Sequence[bytes]) -> MerkleTree:
        """Build a Merkle tree from leaf hashes.

        Args:
            leaf_hashes: Leaf digests in publication order.
                         Must have at least one element.

        Returns:
            A MerkleTree instance.

        Raises:
            ValueError: If leaf_hashes is empty or holds a non-32-byte digest.
        """
        if not leaf_hashes:
            raise ValueError("Cannot build Merkle tree from empty leaf list")

        layer = []
        for h in leaf_hashes:
            if not isinstance(h, (bytes, bytearray)) or len(h) != HASH_SIZE:
                raise ValueError(f"Leaf hash must be {HASH_SIZE} bytes")
            layer.append(bytes(h))
        layers = [layer]

        while len(layer) > 1:
            next_layer = [
                combine(layer[i], layer[i + 1])
                for i in range(0, len(layer) - 1, 2)
            ]
            if len(layer) % 2 == 1:
                next_layer.append(layer[-1])  # promote unpaired node
            layer = next_layer
            layers.append(layer)

        logger.debug(
            "Built Merkle tree: %d leaves, %d layers", len(layers[0]), len(layers)
        )
        return cls(layers)

    @property
    def root(self) -> bytes:
        """The 32-byte Merkle root."""
        return self._layers[-1][0]

    @property
    def root_hex(self) -> str:
        return to_hex(self.root)

    @property
    def leaf_count(self) -> int:
        return len(self._layers[0])

    @property
    def layers(self) -> list[list[bytes]]:
        return [list(layer) for layer in self._layers]

    def get_proof(self, index: int) -> list[bytes]:
        """Sibling digests from leaf ``index`` up to the root.

        Raises:
            IndexOutOfRange: If index is out of range.
        """
        if isinstance(index, bool) or not isinstance(index, int):
            raise IndexOutOfRange(f"Leaf index must be an integer, got {index!r}")
        if index < 0 or index >= self.leaf_count:
            raise IndexOutOfRange(
                f"Leaf index {index} out of range [0, {self.leaf_count})"
            )

        proof: list[bytes] = []
        idx = index
        for layer in self._layers[:-1]:
            pair = idx ^ 1
            if pair < len(layer):
                proof.append(layer[pair])
            idx //= 2
        return proof

    def get_hex_proof(self, index: int) -> list[str]:
        return [to_hex(h) for h in self.get_proof(index)]


def build_root(leaf_hashes: Sequence[bytes]) -> bytes:
    """Root of the tree over ``leaf_hashes``. Raises ValueError when empty."""
    return MerkleTree.from_leaves(leaf_hashes).root


def build_proof(leaf_hashes: Sequence[bytes], index: int) -> list[bytes]:
    """Proof for ``index`` in the tree over ``leaf_hashes``."""
    if not leaf_hashes:
        raise IndexOutOfRange(f"Leaf index {index} out of range [0, 0)")
    return MerkleTree.from_leaves(leaf_hashes).get_proof(index)


class BalanceTree(MerkleTree):
    """Merkle tree over distribution leaves.

    Usage:
        tree = BalanceTree.from_balances([Leaf(0, alice, 100), Leaf(1, bob, 101)])
        proof = tree.get_leaf_proof(0, alice, 100)
        assert BalanceTree.verify_proof(0, alice, 100, proof, tree.root)
    """

    def __init__(self, layers: list[list[bytes]], leaves: list[Leaf]) -> None:
        super().__init__(layers)
        self._leaves = leaves

    @classmethod
    def from_balances(cls, leaves: Sequence[Leaf]) -> BalanceTree:
        """Build a tree from leaves whose indices are their positions.

        Raises:
            ValueError: If leaves is empty or an index does not match its position.
        """
        leaves = list(leaves)
        for position, leaf in enumerate(leaves):
            if leaf.index != position:
                raise ValueError(
                    f"Leaf at position {position} has index {leaf.index}"
                )
        tree = MerkleTree.from_leaves([leaf.hash() for leaf in leaves])
        return cls(tree._layers, leaves)

    @property
    def leaves(self) -> list[Leaf]:
        return list(self._leaves)

    def get_leaf_proof(self, index: int, account: str, amount: int) -> list[bytes]:
        """Proof for the leaf at ``index``, checked against the stored leaf.

        Raises:
            IndexOutOfRange: If index is out of range.
            ValueError: If (account, amount) is not the leaf stored at index.
        """
        proof = self.get_proof(index)
        stored = self._leaves[index]
        if leaf_hash(index, account, amount) != stored.hash():
            raise ValueError(f"Leaf {index} does not match ({account}, {amount})")
        return proof

    @staticmethod
    def verify_proof(
        index: int, account: str, amount: int, proof: Sequence[bytes], root: bytes,
    ) -> bool:
        return verify(Leaf(index, account, amount), index, proof, root)
