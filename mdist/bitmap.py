"""Packed claimed-flag bitmap: word = index // 256, bit = index % 256."""

from __future__ import annotations

from mdist import BITMAP_WORD_BITS

_WORD_MASK = (1 << BITMAP_WORD_BITS) - 1


class ClaimBitmap:
    """Claimed flags packed into 256-bit words.

    Absent words read as all-unclaimed. Not thread-safe on its own; the
    registry serializes access.
    """

    def __init__(self, words: dict[int, int] | None = None) -> None:
        self._words: dict[int, int] = {}
        for word_index, word in (words or {}).items():
            if word_index < 0 or word < 0 or word > _WORD_MASK:
                raise ValueError(f"Invalid bitmap word {word_index}: {word:#x}")
            if word:
                self._words[word_index] = word

    @staticmethod
    def locate(index: int) -> tuple[int, int]:
        return divmod(index, BITMAP_WORD_BITS)

    def is_set(self, index: int) -> bool:
        if index < 0:
            return False
        word_index, bit = self.locate(index)
        return bool((self._words.get(word_index, 0) >> bit) & 1)

    def set(self, index: int) -> None:
        word_index, bit = self.locate(index)
        self._words[word_index] = self._words.get(word_index, 0) | (1 << bit)

    def clear(self, index: int) -> None:
        """Undo ``set`` for a claim that did not complete."""
        word_index, bit = self.locate(index)
        word = self._words.get(word_index, 0) & ~(1 << bit)
        if word:
            self._words[word_index] = word
        else:
            self._words.pop(word_index, None)

    @property
    def words(self) -> dict[int, int]:
        return dict(self._words)

    def indices(self) -> list[int]:
        """All set indices, ascending."""
        result = []
        for word_index in sorted(self._words):
            word = self._words[word_index]
            base = word_index * BITMAP_WORD_BITS
            result.extend(base + bit for bit in range(BITMAP_WORD_BITS) if (word >> bit) & 1)
        return result

    def __len__(self) -> int:
        return sum(bin(w).count("1") for w in self._words.values())
