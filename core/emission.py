"""
Incremental sentence emission for streamed replies.

The emitter owns the append-only response buffer of one turn and the cursor
marking how far it has already been reported as complete sentences. The
cursor only moves forward.
"""
from __future__ import annotations

from core.sentence_splitter import find_sentence_end, is_speakable, normalize_whitespace


class SentenceEmitter:
    def __init__(self, budget: int):
        self.budget = budget
        self.buffer = ""
        self.cursor = 0
        self.chunks = 0
        self.emitted: list[str] = []
        self.overflow: list[str] = []

    @property
    def text(self) -> str:
        return self.buffer

    @property
    def single_chunk(self) -> bool:
        return self.chunks == 1

    @property
    def at_budget(self) -> bool:
        return len(self.emitted) >= self.budget

    def feed(self, delta: str) -> list[str]:
        """Append a delta; return sentences completed by it that fit the budget."""
        if not delta:
            return []
        self.chunks += 1
        self.buffer += delta
        return self._carve(final=False)

    def finish(self) -> list[str]:
        """End of stream: the unterminated tail becomes the last sentence."""
        return self._carve(final=True)

    def release_overflow(self) -> list[str]:
        """Hand back sentences held past the budget and count them as emitted."""
        released, self.overflow = self.overflow, []
        self.emitted.extend(released)
        return released

    def _carve(self, final: bool) -> list[str]:
        carved = []
        while True:
            end = find_sentence_end(self.buffer, self.cursor, final)
            if end is None:
                break
            carved.append(normalize_whitespace(self.buffer[self.cursor:end]))
            self.cursor = end
        if final:
            tail = normalize_whitespace(self.buffer[self.cursor:])
            self.cursor = len(self.buffer)
            if tail:
                carved.append(tail)

        admitted = []
        for sentence in carved:
            if not is_speakable(sentence):
                continue
            if self.at_budget:
                self.overflow.append(sentence)
            else:
                self.emitted.append(sentence)
                admitted.append(sentence)
        return admitted
