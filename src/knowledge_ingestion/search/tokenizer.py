from __future__ import annotations

import re
import unicodedata
from typing import Callable, Optional

# Letters and digits in any script; underscores split words.
_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)

Stemmer = Callable[[str], str]


class Tokenizer:
    """Case-folding word tokenizer with an optional pluggable stemmer."""

    def __init__(
        self,
        stemmer: Optional[Stemmer] = None,
        max_token_length: int = 255,
    ) -> None:
        self.stemmer = stemmer
        self.max_token_length = max_token_length

    def normalize(self, text: str) -> str:
        return unicodedata.normalize("NFKC", text).casefold()

    def tokenize(self, text: Optional[str]) -> list[str]:
        if not text:
            return []
        tokens = []
        for match in _WORD_RE.finditer(self.normalize(text)):
            token = match.group(0)
            if self.stemmer is not None:
                token = self.stemmer(token)
            if token and len(token) <= self.max_token_length:
                tokens.append(token)
        return tokens

    def positions(self, text: Optional[str]) -> dict[str, list[int]]:
        """Map each token to the positions it occurs at within `text`."""
        out: dict[str, list[int]] = {}
        for pos, token in enumerate(self.tokenize(text)):
            out.setdefault(token, []).append(pos)
        return out
