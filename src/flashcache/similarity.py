"""Text fingerprinting and edit-distance similarity.

Pure functions, no I/O. Used by the generation cache to decide whether a
new source text is close enough to a stored one to reuse its flashcards.
"""

from __future__ import annotations

import hashlib
import unicodedata

from rapidfuzz.distance import Levenshtein


def normalise_text(text: str) -> str:
    """Canonical form used for hashing: NFC Unicode, surrounding whitespace trimmed."""
    return unicodedata.normalize("NFC", text).strip()


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the normalised text."""
    return hashlib.sha256(normalise_text(text).encode("utf-8")).hexdigest()


def similarity(a: str, b: str, *, score_cutoff: float | None = None) -> float:
    """Normalised Levenshtein similarity in ``[0, 1]``.

    ``(max(len a, len b) - distance(a, b)) / max(len a, len b)``. Two empty
    strings are identical (1.0). Scores below ``score_cutoff`` come back as
    0.0, which lets rapidfuzz stop early on hopeless pairs.
    """
    if not a and not b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b, score_cutoff=score_cutoff)
