"""
Language utilities for the call relay.

Language detection is a pluggable capability: anything with
`detect(text) -> Optional[str]` can be handed to the turn pipeline. The default
detector is a small, deterministic stopword scorer that returns an ISO 639-1
code, or None when the utterance is too short or too ambiguous to call.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Dict, FrozenSet, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)


class LanguageDetector(Protocol):
    def detect(self, text: str) -> Optional[str]: ...


def _normalize_for_matching(text: str) -> str:
    text = (text or "").strip().lower()
    text = text.replace("’", "'")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"\s+", " ", text)
    return text


_WORD_RE = re.compile(r"[a-z]+")

_STOPWORDS: Dict[str, FrozenSet[str]] = {
    "en": frozenset(
        "the and you is are to of a in that it for i we my your what have can do this with please "
        "how much thanks thank would like want hi hello open".split()
    ),
    "fr": frozenset(
        "le la les et est vous je de des un une que pour avec mon ma mes bonjour merci "
        "combien voudrais veux quel quelle c'est oui non pas sont".split()
    ),
    "es": frozenset(
        "el la los las y es usted yo de un una que para con mi hola gracias cuanto quiero "
        "quisiera tiene por favor son esta".split()
    ),
    "de": frozenset(
        "der die das und ist sie ich zu ein eine dass fur mit mein hallo danke wie viel "
        "mochte haben bitte sind nicht".split()
    ),
    "it": frozenset(
        "il lo la gli e sono io di un una che per con mio ciao grazie quanto vorrei voglio "
        "avete prego non".split()
    ),
    "pt": frozenset(
        "o os as e voce eu de um uma que para com meu ola obrigado obrigada quanto quero "
        "gostaria tem por favor nao sao".split()
    ),
}


class StopwordLanguageDetector:
    """
    Best-effort detector based on stopword hits.

    Returns None ("undetermined") when the text has fewer than `min_words`
    words, when the best language scores fewer than `min_hits`, or when two
    languages tie.
    """

    def __init__(self, *, min_words: int = 2, min_hits: int = 2):
        self.min_words = min_words
        self.min_hits = min_hits

    def detect(self, text: str) -> Optional[str]:
        normalized = _normalize_for_matching(text)
        # Keep elisions like "c'est" / "qu'il" intact for the French list.
        words = re.findall(r"[a-z]+(?:'[a-z]+)?", normalized)
        if len(words) < self.min_words:
            return None

        scores: Dict[str, int] = {}
        for code, stopwords in _STOPWORDS.items():
            hits = 0
            for word in words:
                if word in stopwords:
                    hits += 1
                elif "'" in word and any(part in stopwords for part in _WORD_RE.findall(word)):
                    hits += 1
            scores[code] = hits

        ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
        best_code, best_hits = ranked[0]
        runner_up_hits = ranked[1][1] if len(ranked) > 1 else 0

        if best_hits < self.min_hits or best_hits == runner_up_hits:
            return None
        return best_code


def normalize_language_code(code: Optional[str]) -> Optional[str]:
    """
    Normalize a detected language tag ("fr-CA", "EN_us") to its primary
    ISO 639-1 subtag. Returns None for empty or undetermined tags.
    """
    if not code:
        return None
    norm = code.strip().lower().replace("_", "-")
    primary = norm.split("-", 1)[0]
    if primary in ("", "und", "zxx", "mul"):
        return None
    if not primary.isalpha() or len(primary) not in (2, 3):
        return None
    return primary


_LANGUAGE_NAMES: Dict[str, str] = {
    "en": "English",
    "fr": "French",
    "es": "Spanish",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
}


def language_name(code: Optional[str]) -> Optional[str]:
    """Human-readable name for a language code, used in reply-language hints."""
    normalized = normalize_language_code(code)
    if normalized is None:
        return None
    return _LANGUAGE_NAMES.get(normalized, normalized)


def safe_detect(detector: Optional[LanguageDetector], text: str) -> Optional[str]:
    """Run a detector, treating any failure as "undetermined"."""
    if detector is None or not text:
        return None
    try:
        return normalize_language_code(detector.detect(text))
    except Exception as e:
        logger.debug("Language detection failed", error=str(e))
        return None
