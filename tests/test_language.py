"""
Tests for language utilities.
"""

import pytest

from src.callrelay.language import (
    StopwordLanguageDetector,
    language_name,
    normalize_language_code,
    safe_detect,
)


class TestStopwordDetector:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Hello, what time do you open on Sunday please?", "en"),
            ("Bonjour, est-ce que vous avez des croissants pour demain ?", "fr"),
            ("Hola, quiero una mesa para dos por favor", "es"),
            ("Hallo, ich möchte bitte eine Reservierung für heute", "de"),
            ("Ciao, vorrei una pizza per favore, grazie", "it"),
            ("Olá, eu gostaria de um café, obrigado", "pt"),
        ],
    )
    def test_detects_common_languages(self, text, expected):
        assert StopwordLanguageDetector().detect(text) == expected

    def test_french_elisions(self):
        assert StopwordLanguageDetector().detect("C'est combien pour le pain ?") == "fr"

    def test_single_word_is_undetermined(self):
        assert StopwordLanguageDetector().detect("Bonjour") is None

    def test_no_stopwords_is_undetermined(self):
        assert StopwordLanguageDetector().detect("Croissant baguette brioche") is None

    def test_empty_text(self):
        assert StopwordLanguageDetector().detect("") is None


class TestNormalizeLanguageCode:
    @pytest.mark.parametrize(
        "code,expected",
        [
            ("fr", "fr"),
            ("fr-CA", "fr"),
            ("EN_us", "en"),
            (" es ", "es"),
            ("und", None),
            ("zxx", None),
            ("", None),
            (None, None),
            ("x1", None),
        ],
    )
    def test_normalize(self, code, expected):
        assert normalize_language_code(code) == expected

    def test_language_name(self):
        assert language_name("fr-FR") == "French"
        assert language_name("sv") == "sv"
        assert language_name(None) is None


class TestSafeDetect:
    def test_failure_is_undetermined(self):
        class Broken:
            def detect(self, text):
                raise RuntimeError("model not loaded")

        assert safe_detect(Broken(), "bonjour tout le monde") is None

    def test_result_is_normalized(self):
        class Tagged:
            def detect(self, text):
                return "pt-BR"

        assert safe_detect(Tagged(), "olá") == "pt"

    def test_no_detector(self):
        assert safe_detect(None, "hello there") is None
