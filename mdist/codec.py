"""
Canonical leaf encoding for distribution entitlements.

Leaf layout (abi.encodePacked(uint256, address, uint256)):
    index   32 bytes big-endian
    account 20 bytes
    amount  32 bytes big-endian

Leaf hash: Keccak-256 of the 84-byte encoding. Changing the hash or the
layout invalidates every proof issued against a published root.
"""

from __future__ import annotations

from dataclasses import dataclass

from eth_utils import (
    is_address,
    is_checksum_address,
    keccak,
    to_canonical_address,
    to_checksum_address,
)

from mdist import ADDRESS_SIZE, UINT256_MAX, UINT256_SIZE


class AmountOverflow(ValueError):
    """Amount does not fit in an unsigned 256-bit integer."""

    reason = "AmountOverflow: amount exceeds uint256"


@dataclass(frozen=True)
class Leaf:
    """One entitlement: ``account`` may redeem ``amount`` at ``index``.

    Attributes:
        index: Position in the published allow-list (dense, 0-based).
        account: Checksummed 20-byte account address.
        amount: Unsigned 256-bit amount.
    """

    index: int
    account: str
    amount: int

    def encode(self) -> bytes:
        return encode_leaf(self.index, self.account, self.amount)

    def hash(self) -> bytes:
        return hash_leaf(self.encode())


def normalize_address(value: str) -> str:
    """Return the EIP-55 checksummed form of an account address.

    Accepts all-lowercase, all-uppercase or correctly checksummed hex.
    Mixed-case input with a wrong checksum is rejected.

    Raises:
        ValueError: If the address is not a valid 20-byte hex address.
    """
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    digits = value[2:]
    if digits != digits.lower() and digits != digits.upper() and not is_checksum_address(value):
        raise ValueError(f"Invalid address checksum: {value!r}")
    return to_checksum_address(value)


def address_bytes(value: str) -> bytes:
    """Return the 20 raw bytes of an account address."""
    raw = to_canonical_address(normalize_address(value))
    if len(raw) != ADDRESS_SIZE:
        raise ValueError(f"Invalid address length: {len(raw)} (expected {ADDRESS_SIZE})")
    return raw


def _uint256(value: int, field: str) -> bytes:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{field} must be non-negative, got {value}")
    if value > UINT256_MAX:
        if field == "amount":
            raise AmountOverflow(f"Amount {value} exceeds uint256")
        raise ValueError(f"{field} {value} exceeds uint256")
    return value.to_bytes(UINT256_SIZE, "big")


def encode_leaf(index: int, account: str, amount: int) -> bytes:
    """Serialize an entitlement into its fixed 84-byte form."""
    return _uint256(index, "index") + address_bytes(account) + _uint256(amount, "amount")


def hash_leaf(data: bytes) -> bytes:
    """Keccak-256 of an encoded leaf."""
    return keccak(data)


def leaf_hash(index: int, account: str, amount: int) -> bytes:
    return hash_leaf(encode_leaf(index, account, amount))


def to_hex(data: bytes) -> str:
    """0x-prefixed lowercase hex of a digest."""
    return "0x" + data.hex()


def from_hex(value: str | bytes, size: int | None = None) -> bytes:
    """Decode a 0x-prefixed (or bare) hex string.

    Raises:
        ValueError: On malformed hex or, when ``size`` is given, wrong length.
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        text = value[2:] if value[:2] in ("0x", "0X") else value
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise ValueError(f"Invalid hex: {value!r}")
    if size is not None and len(raw) != size:
        raise ValueError(f"Invalid length: {len(raw)} bytes (expected {size})")
    return raw


def amount_to_hex(amount: int) -> str:
    """Minimal even-length hex of an amount, e.g. 750 -> '0x02ee'."""
    _uint256(amount, "amount")
    digits = format(amount, "x")
    if len(digits) % 2:
        digits = "0" + digits
    return "0x" + digits


def parse_amount(value: int | str) -> int:
    """Parse an amount given as int, decimal string or 0x hex string.

    Raises:
        ValueError: If the value is negative or not a number.
        AmountOverflow: If it exceeds uint256.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            if text[:2] in ("0x", "0X"):
                amount = int(text[2:], 16)
            else:
                amount = int(text, 10)
        except ValueError:
            raise ValueError(f"Invalid amount: {value!r}")
    else:
        raise ValueError(f"Invalid amount: {value!r}")
    _uint256(amount, "amount")
    return amount
