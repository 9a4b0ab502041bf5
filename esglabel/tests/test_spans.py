from __future__ import annotations

import pytest

from esglabel.errors import SelectionError
from esglabel.spans import LabeledSpan, SpanDocument, markup_to_text

TEXT = "We will cut emissions by 40%. In 2023 we cut them by 12%."


@pytest.fixture()
def doc() -> SpanDocument:
    return SpanDocument(TEXT)


class TestMarkupToText:
    def test_plain_text_untouched(self):
        assert markup_to_text("plain words") == "plain words"

    def test_strips_tags(self):
        assert markup_to_text("<p>Net <b>zero</b> by 2050</p>") == "Net zero by 2050"

    def test_entities(self):
        assert markup_to_text("R&amp;D spend") == "R&D spend"

    def test_control_characters_keep_length(self):
        text = markup_to_text("Scope 1\x0cR&D <b>spend</b>")
        assert text == "Scope 1 R&D spend"
        assert markup_to_text("a\x0cb") == "a b"

    def test_empty(self):
        assert markup_to_text(None) == ""
        assert markup_to_text("") == ""


class TestApplyLabel:
    def test_single_span(self, doc):
        labeled = doc.apply_label(0, 28, "promise")
        assert labeled.extract_labeled("promise") == "We will cut emissions by 40%"
        assert labeled.extract_labeled("evidence") == ""
        assert doc.spans == ()

    def test_pieces_joined_in_document_order(self, doc):
        labeled = doc.apply_label(30, 57, "evidence").apply_label(0, 7, "evidence")
        assert labeled.extract_labeled("evidence") == "We will In 2023 we cut them by 12%."

    def test_pieces_are_trimmed(self, doc):
        labeled = doc.apply_label(28, 37, "evidence")
        assert labeled.extract_labeled("evidence") == ". In 2023"

    def test_duplicate_is_noop(self, doc):
        once = doc.apply_label(0, 7, "promise")
        assert once.apply_label(0, 7, "promise") is once

    def test_overlapping_labels(self, doc):
        labeled = doc.apply_label(0, 28, "promise").apply_label(12, 21, "evidence")
        assert labeled.extract_labeled("promise") == "We will cut emissions by 40%"
        assert labeled.extract_labeled("evidence") == "emissions"

    @pytest.mark.parametrize("start,end", [(5, 5), (10, 3), (-1, 4), (0, len(TEXT) + 1)])
    def test_bad_ranges(self, doc, start, end):
        with pytest.raises(SelectionError):
            doc.apply_label(start, end, "promise")

    def test_whitespace_only(self):
        with pytest.raises(SelectionError):
            SpanDocument("a    b").apply_label(1, 5, "promise")

    def test_unknown_label(self, doc):
        with pytest.raises(SelectionError):
            doc.apply_label(0, 4, "claim")

    def test_non_integer_offsets(self, doc):
        with pytest.raises(SelectionError):
            doc.apply_label(0.0, 4, "promise")  # type: ignore[arg-type]


class TestApplyAll:
    def test_dicts_and_spans(self, doc):
        labeled = doc.apply_all([
            {"label": "promise", "start": 0, "end": 7},
            LabeledSpan(30, 37, "evidence"),
        ])
        assert labeled.extract_labeled("promise") == "We will"
        assert labeled.extract_labeled("evidence") == "In 2023"

    def test_one_bad_span_aborts(self, doc):
        with pytest.raises(SelectionError):
            doc.apply_all([{"label": "promise", "start": 0, "end": 7}, {"label": "promise", "start": 9}])


class TestReset:
    def test_reset_clears_every_label(self, doc):
        labeled = doc.apply_label(0, 7, "promise").apply_label(30, 37, "evidence")
        cleared = labeled.reset()
        assert cleared.extract_labeled("promise") == ""
        assert cleared.extract_labeled("evidence") == ""
        assert cleared.original == TEXT

    def test_remove_one_label(self, doc):
        labeled = doc.apply_label(0, 7, "promise").apply_label(30, 37, "evidence")
        only_evidence = labeled.remove_label("promise")
        assert only_evidence.extract_labeled("promise") == ""
        assert only_evidence.extract_labeled("evidence") == "In 2023"

    def test_extract_is_repeatable(self, doc):
        labeled = doc.apply_label(0, 7, "promise")
        assert labeled.extract_labeled("promise") == labeled.extract_labeled("promise")


class TestSegments:
    def test_runs(self):
        doc = SpanDocument("abcdef").apply_label(1, 4, "promise").apply_label(3, 5, "evidence")
        assert doc.segments() == [
            ("a", frozenset()),
            ("bc", frozenset({"promise"})),
            ("d", frozenset({"promise", "evidence"})),
            ("e", frozenset({"evidence"})),
            ("f", frozenset()),
        ]

    def test_unlabeled(self):
        assert SpanDocument("abc").segments() == [("abc", frozenset())]

    def test_segments_rebuild_original(self, doc):
        labeled = doc.apply_label(3, 20, "promise").apply_label(10, 40, "evidence")
        assert "".join(text for text, _ in labeled.segments()) == TEXT
