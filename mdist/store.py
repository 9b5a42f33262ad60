"""
Claim store: JSON persistence for a registry's published root and bitmap.

Layout (one file per distribution):
    {
      "merkle_root": "0x..",
      "token": "0x.." | "<label>",
      "leaf_count": 3 | null,
      "words": {"0": "0x05", ...}      # word index -> packed claimed flags
    }

All writes are atomic (temp file + os.replace) for crash safety. A corrupt
file raises instead of silently resetting the bitmap.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


class ClaimStoreError(Exception):
    """Error in claim store operations."""

    reason = "ClaimStore: invalid or mismatched state"


class ClaimStore:
    """File-backed state for one ClaimRegistry.

    Usage:
        store = ClaimStore("~/.mdist/drop.json")
        registry = ClaimRegistry(wallet, root, store=store)
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> dict[str, Any] | None:
        """Read the stored state. Returns None if no file exists.

        Raises:
            ClaimStoreError: If the file exists but cannot be parsed.
        """
        if not self.path.is_file():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise ClaimStoreError(f"Cannot read claim store {self.path}: {e}")
        if not isinstance(data, dict) or "merkle_root" not in data:
            raise ClaimStoreError(f"Corrupt claim store: {self.path}")
        return data

    def load_words(self) -> dict[int, int]:
        """Stored bitmap words (empty when nothing is stored)."""
        data = self.load()
        if data is None:
            return {}
        try:
            return {
                int(k): int(v, 16) for k, v in data.get("words", {}).items()
            }
        except (ValueError, TypeError, AttributeError) as e:
            raise ClaimStoreError(f"Corrupt bitmap in {self.path}: {e}")

    def _write(self, data: dict[str, Any]) -> None:
        """Atomically write the JSON document (temp + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data, indent=2, sort_keys=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp", prefix=".claims_"
        )
        try:
            os.write(fd, content.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            os.replace(tmp_path, str(self.path))
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

    def save_config(
        self, merkle_root: str, token: str, leaf_count: int | None,
    ) -> None:
        """Record the published configuration, keeping any stored bitmap.

        Raises:
            ClaimStoreError: If a different root is already stored here.
        """
        data = self.load()
        if data is not None and data["merkle_root"] != merkle_root:
            raise ClaimStoreError(
                f"Claim store {self.path} belongs to root {data['merkle_root']}"
            )
        words = data.get("words", {}) if data else {}
        self._write({
            "merkle_root": merkle_root,
            "token": token,
            "leaf_count": leaf_count,
            "words": words,
        })

    def save_words(self, words: dict[int, int]) -> None:
        """Replace the stored bitmap words.

        Raises:
            ClaimStoreError: If no configuration has been saved yet.
        """
        data = self.load()
        if data is None:
            raise ClaimStoreError(f"Claim store {self.path} is not initialized")
        data["words"] = {
            str(k): hex(v) for k, v in sorted(words.items()) if v
        }
        self._write(data)
