"""Token table loading and detokenization."""

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path

from dictation_stream.engine import VocabularyError

logger = logging.getLogger(__name__)

SENTENCEPIECE_MARKER = "▁"

#: Blank id of the JSON vocabulary shipped with Parakeet TDT v3 exports.
JSON_BLANK_ID = 8192


class Vocabulary:
    """Immutable token id -> token string mapping with a designated blank id."""

    def __init__(self, tokens: Mapping[int, str], blank_id: int):
        self._tokens = dict(tokens)
        self._blank_id = blank_id

    @property
    def blank_id(self) -> int:
        return self._blank_id

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, token_id: object) -> bool:
        return token_id in self._tokens

    def token(self, token_id: int) -> str | None:
        return self._tokens.get(token_id)

    @classmethod
    def from_text(cls, path: Path, blank_id: int = 0) -> "Vocabulary":
        """Load a newline-delimited vocabulary where line index is the token id.

        Raises:
            VocabularyError: If the file cannot be read
        """
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise VocabularyError(f"Failed to read vocab file {path}: {e}") from e

        tokens = {idx: line.strip() for idx, line in enumerate(content.splitlines())}
        logger.info("Loaded vocabulary with %d tokens, blank_id=%d", len(tokens), blank_id)
        return cls(tokens, blank_id)

    @classmethod
    def from_json(cls, path: Path, blank_id: int = JSON_BLANK_ID) -> "Vocabulary":
        """Load a JSON object mapping token string -> id and invert it.

        Raises:
            VocabularyError: If the file cannot be read or is not a string -> int map
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise VocabularyError(f"Failed to read vocab file {path}: {e}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise VocabularyError(f"Failed to parse vocab JSON {path}: {e}") from e

        if not isinstance(data, dict):
            raise VocabularyError(f"Vocab JSON must be an object: {path}")

        tokens: dict[int, str] = {}
        for token, token_id in data.items():
            if isinstance(token_id, bool) or not isinstance(token_id, int):
                raise VocabularyError(
                    f"Vocab JSON {path}: id for token {token!r} is not an integer"
                )
            tokens[token_id] = token

        logger.info("Loaded vocabulary with %d tokens, blank_id=%d", len(tokens), blank_id)
        return cls(tokens, blank_id)

    @classmethod
    def load(cls, path: Path) -> "Vocabulary":
        """Load by file type: ``.json`` maps tokens to ids, anything else is line-indexed."""
        path = Path(path)
        if path.suffix.lower() == ".json":
            return cls.from_json(path)
        return cls.from_text(path)

    def decode(self, token_ids: Iterable[int]) -> str:
        """Join token strings, rendering the SentencePiece marker as a space.

        Blank and unknown ids are skipped; the result is trimmed.
        """
        pieces = []
        for token_id in token_ids:
            if token_id == self._blank_id:
                continue
            token = self._tokens.get(int(token_id))
            if token is None:
                continue
            pieces.append(token.replace(SENTENCEPIECE_MARKER, " "))
        return "".join(pieces).strip()
