"""Size-driven splitting of long documents along sentence boundaries."""

import math
import re
from typing import List

# Break after CJK terminators and newlines, and after .!? when whitespace follows.
# The pattern is zero-width so splitting keeps every character.
SENTENCE_BOUNDARY = re.compile(r"(?<=[。！？\n])|(?<=[.!?])(?=\s)")

_WHITESPACE = re.compile(r"\s")


class ContentSplitter:
    """Splits text whose estimated token count exceeds ``max_tokens``.

    Tokens are estimated as ``ceil(len(text) * token_ratio)``. Chunks end on
    sentence boundaries; a single sentence longer than the limit is wrapped at
    whitespace, or at the character limit when it has none.
    """

    def __init__(self, max_tokens: int = 7000, token_ratio: float = 1.5):
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        if token_ratio <= 0:
            raise ValueError("token_ratio must be positive")
        self.max_tokens = max_tokens
        self.token_ratio = token_ratio
        self.max_chars = max(1, math.floor(max_tokens / token_ratio))

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) * self.token_ratio)

    def needs_split(self, text: str) -> bool:
        return self.estimate_tokens(text) > self.max_tokens

    @staticmethod
    def split_sentences(text: str) -> List[str]:
        """Split into sentences; joining the result gives back ``text``."""
        return [piece for piece in SENTENCE_BOUNDARY.split(text) if piece]

    def _wrap(self, sentence: str) -> List[str]:
        pieces = []
        while len(sentence) > self.max_chars:
            cut = 0
            for match in _WHITESPACE.finditer(sentence, 1, self.max_chars + 1):
                cut = match.start()
            if cut <= 0:
                cut = self.max_chars
            pieces.append(sentence[:cut])
            sentence = sentence[cut:]
        pieces.append(sentence)
        return pieces

    def split(self, text: str) -> List[str]:
        """Return ordered chunks, none of which exceeds the token threshold."""
        if not self.needs_split(text):
            return [text]

        chunks: List[str] = []
        current = ""

        def flush() -> None:
            nonlocal current
            stripped = current.strip()
            if stripped:
                chunks.append(stripped)
            current = ""

        for sentence in self.split_sentences(text):
            if len(sentence) > self.max_chars:
                flush()
                pieces = self._wrap(sentence)
                chunks.extend(piece.strip() for piece in pieces[:-1] if piece.strip())
                current = pieces[-1]
                continue
            if len(current) + len(sentence) > self.max_chars:
                flush()
            current += sentence

        flush()
        return chunks
