"""
Balance map parsing: account -> amount entries to an indexed leaf set,
Merkle root, per-account proofs and token total.

Accepted inputs:
    {"0xabc...": 200, "0xdef...": "0x012c"}                  mapping
    [{"address": "0xabc...", "earnings": "0xc8"}, ...]        record list
    [("0xabc...", 200), ...]                                  pair list

Index assignment: accounts are numbered in order of their first appearance
in the input (after checksum normalization). Pass ``sort=True`` to number
them by ascending checksummed address instead.

Output artifact (JSON):
    {"merkleRoot": "0x..", "tokenTotal": "0x..",
     "claims": {"0xAbC...": {"index": 0, "amount": "0xc8", "proof": ["0x.."]}}}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from mdist import UINT256_MAX
from mdist.codec import (
    AmountOverflow,
    Leaf,
    amount_to_hex,
    from_hex,
    normalize_address,
    parse_amount,
)
from mdist.merkle import BalanceTree

logger = logging.getLogger(__name__)

__all__ = [
    "AmountOverflow",
    "BalanceMap",
    "Claim",
    "Distribution",
    "EmptyInput",
    "build_leaves",
    "parse_balance_map",
]


class EmptyInput(ValueError):
    """No entries remain after merging."""

    reason = "EmptyInput: balance map has no entries"


@dataclass(frozen=True)
class BalanceMap:
    """Ordered, index-assigned leaves and the sum of their amounts."""

    leaves: list[Leaf]
    total: int


@dataclass(frozen=True)
class Claim:
    """What one account presents to ``ClaimRegistry.claim``."""

    index: int
    amount: int
    proof: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "amount": amount_to_hex(self.amount),
            "proof": list(self.proof),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Claim:
        proof = data["proof"]
        if not isinstance(proof, list):
            raise ValueError("Claim proof must be a list")
        for p in proof:
            from_hex(p, 32)
        index = data["index"]
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise ValueError(f"Claim index must be a non-negative integer, got {index!r}")
        return cls(
            index=index,
            amount=parse_amount(data["amount"]),
            proof=[str(p) for p in proof],
        )


@dataclass
class Distribution:
    """The distributable artifact: root, total and one claim per account."""

    merkle_root: str
    token_total: int
    claims: dict[str, Claim] = field(default_factory=dict)

    def claim_for(self, account: str) -> Claim:
        """Look up an account's claim (any address casing).

        Raises:
            KeyError: If the account is not in the distribution.
        """
        key = normalize_address(account)
        if key not in self.claims:
            raise KeyError(f"No claim for {key}")
        return self.claims[key]

    def leaves(self) -> list[Leaf]:
        """Leaves in index order, rebuilt from the claims."""
        ordered = sorted(self.claims.items(), key=lambda item: item[1].index)
        return [Leaf(c.index, account, c.amount) for account, c in ordered]

    def to_dict(self) -> dict[str, Any]:
        return {
            "merkleRoot": self.merkle_root,
            "tokenTotal": amount_to_hex(self.token_total),
            "claims": {
                account: claim.to_dict() for account, claim in self.claims.items()
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Distribution:
        """Parse an artifact dict.

        Raises:
            ValueError: On missing keys or malformed values.
        """
        try:
            root = data["merkleRoot"]
            total = data["tokenTotal"]
            raw_claims = data["claims"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid distribution: missing {e}")
        from_hex(root, 32)
        if not isinstance(raw_claims, dict):
            raise ValueError("Invalid distribution: claims must be an object")
        try:
            claims = {
                normalize_address(account): Claim.from_dict(c)
                for account, c in raw_claims.items()
            }
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid claim entry: {e}")
        return cls(merkle_root=root, token_total=parse_amount(total), claims=claims)

    @classmethod
    def from_json(cls, text: str) -> Distribution:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid distribution JSON: {e}")
        return cls.from_dict(data)


def _iter_entries(entries: Any) -> Iterable[tuple[str, Any]]:
    if isinstance(entries, Mapping):
        yield from entries.items()
        return
    if isinstance(entries, (str, bytes)):
        raise ValueError("Balance map must be a mapping or a list of entries")
    try:
        items = iter(entries)
    except TypeError:
        raise ValueError("Balance map must be a mapping or a list of entries")
    for entry in items:
        if isinstance(entry, Mapping):
            if "address" not in entry or "earnings" not in entry:
                raise ValueError(f"Entry missing address/earnings: {entry!r}")
            yield entry["address"], entry["earnings"]
        elif isinstance(entry, (tuple, list)) and len(entry) == 2:
            yield entry[0], entry[1]
        else:
            raise ValueError(f"Invalid balance entry: {entry!r}")


def build_leaves(entries: Any, *, sort: bool = False) -> BalanceMap:
    """Merge duplicate accounts, assign indices and sum the total.

    Args:
        entries: Mapping, record list or pair list (see module docstring).
        sort: Number accounts by ascending address instead of input order.

    Returns:
        BalanceMap with leaves in index order.

    Raises:
        EmptyInput: If no entries remain.
        AmountOverflow: If a merged amount or the total exceeds uint256.
        ValueError: On an invalid address or amount.
    """
    merged: dict[str, int] = {}
    for raw_account, raw_amount in _iter_entries(entries):
        account = normalize_address(raw_account)
        amount = merged.get(account, 0) + parse_amount(raw_amount)
        if amount > UINT256_MAX:
            raise AmountOverflow(f"Merged amount for {account} exceeds uint256")
        merged[account] = amount

    if not merged:
        raise EmptyInput("Balance map is empty")

    accounts = sorted(merged) if sort else list(merged)
    leaves = [Leaf(i, account, merged[account]) for i, account in enumerate(accounts)]

    total = sum(leaf.amount for leaf in leaves)
    if total > UINT256_MAX:
        raise AmountOverflow(f"Token total {total} exceeds uint256")

    return BalanceMap(leaves=leaves, total=total)


def parse_balance_map(entries: Any, *, sort: bool = False) -> Distribution:
    """Build the full distribution artifact from a balance map."""
    balances = build_leaves(entries, sort=sort)
    tree = BalanceTree.from_balances(balances.leaves)

    claims = {
        leaf.account: Claim(
            index=leaf.index,
            amount=leaf.amount,
            proof=tree.get_hex_proof(leaf.index),
        )
        for leaf in balances.leaves
    }

    logger.info(
        "Built distribution: %d claims, total %d, root %s",
        len(claims), balances.total, tree.root_hex,
    )
    return Distribution(
        merkle_root=tree.root_hex,
        token_total=balances.total,
        claims=claims,
    )
