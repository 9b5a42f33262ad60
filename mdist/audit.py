"""
Append-only redemption log with hash chain.

Each entry records one successful claim:
    - sequence, index, account, amount (decimal string), timestamp
    - prev_hash: hash of the previous entry (chain linkage)
    - entry_hash: SHA-256(prev_hash|index|account|amount|timestamp)

Logs are persisted to <data_dir>/audit/<name>.json with atomic writes
(temp file + os.replace) and thread-safe access (threading.Lock). A corrupt
file raises ClaimLogError instead of starting a fresh chain over it.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mdist import AUDIT_DIR, DEFAULT_DATA_DIR


_GENESIS_HASH = "0" * 64  # Hash chain starts with zeros


class ClaimLogError(Exception):
    """Claim log file cannot be read."""

    reason = "ClaimLog: unreadable log"


@dataclass
class ClaimLogEntry:
    """A single redemption in a claim log."""

    sequence: int
    index: int
    account: str
    amount: str
    timestamp: str
    prev_hash: str
    entry_hash: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> ClaimLogEntry:
        return cls(**d)


def _compute_entry_hash(
    prev_hash: str,
    index: int,
    account: str,
    amount: str,
    timestamp: str,
) -> str:
    payload = f"{prev_hash}|{index}|{account}|{amount}|{timestamp}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ClaimLog:
    """Append-only claim log with hash chain linkage.

    Thread-safe for concurrent appends.

    Usage:
        log = ClaimLog("airdrop-1")
        registry = ClaimRegistry(wallet, root, audit=log)
        ...
        assert log.verify_chain()
    """

    def __init__(self, name: str, base_dir: Path | None = None) -> None:
        if not name or not name.replace("-", "").replace("_", "").isalnum():
            raise ValueError(
                f"Invalid claim log name: {name!r} (alphanumeric, hyphens, underscores only)"
            )

        if base_dir is None:
            base_dir = Path(DEFAULT_DATA_DIR).expanduser() / AUDIT_DIR
        self._path = Path(base_dir) / f"{name}.json"
        self._lock = threading.Lock()
        self._entries: list[ClaimLogEntry] = []
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        """Load entries from disk.

        Raises:
            ClaimLogError: If the file exists but cannot be parsed.
        """
        if not self._path.is_file():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise TypeError(f"expected a list, got {type(raw).__name__}")
            self._entries = [ClaimLogEntry.from_dict(e) for e in raw]
        except (json.JSONDecodeError, OSError, KeyError, TypeError) as e:
            raise ClaimLogError(f"Corrupt claim log {self._path}: {e}")

    def _save(self) -> None:
        """Atomically persist entries to disk."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(
            [e.to_dict() for e in self._entries],
            indent=2,
            sort_keys=True,
        )
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._path.parent), suffix=".tmp"
        )
        try:
            os.write(fd, data.encode("utf-8"))
            os.close(fd)
            os.replace(tmp_path, str(self._path))
        except Exception:
            try:
                os.close(fd)
            except OSError:
                pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def record(self, claim: Any) -> ClaimLogEntry:
        """Append a redemption.

        Args:
            claim: Anything with ``index``, ``account`` and ``amount``
                   (a ClaimRecord from the registry).

        Returns:
            The new ClaimLogEntry.
        """
        with self._lock:
            prev_hash = (
                self._entries[-1].entry_hash if self._entries else _GENESIS_HASH
            )
            timestamp = datetime.now(timezone.utc).isoformat()
            amount = str(claim.amount)

            entry = ClaimLogEntry(
                sequence=len(self._entries),
                index=claim.index,
                account=claim.account,
                amount=amount,
                timestamp=timestamp,
                prev_hash=prev_hash,
                entry_hash=_compute_entry_hash(
                    prev_hash, claim.index, claim.account, amount, timestamp
                ),
            )

            self._entries.append(entry)
            self._save()
            return entry

    def verify_chain(self) -> bool:
        """Verify the entire hash chain.

        Fail-closed: returns False on any error.
        """
        try:
            with self._lock:
                prev = _GENESIS_HASH
                for i, entry in enumerate(self._entries):
                    if entry.sequence != i or entry.prev_hash != prev:
                        return False
                    expected = _compute_entry_hash(
                        entry.prev_hash,
                        entry.index,
                        entry.account,
                        entry.amount,
                        entry.timestamp,
                    )
                    if entry.entry_hash != expected:
                        return False
                    prev = entry.entry_hash
                return True
        except Exception:
            return False

    @property
    def entries(self) -> list[ClaimLogEntry]:
        """Return a copy of all entries."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
