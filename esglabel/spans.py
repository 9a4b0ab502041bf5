"""Label spans over a record's text.

A record's ``original_data`` may carry light markup. Labels are kept as offset
ranges over the plain text of that markup, never as edits to the markup
itself, so extraction and reset are pure functions of (original, spans).
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from lxml import html as lxml_html

from esglabel.errors import SelectionError

LABELS = ("promise", "evidence")

# Control characters lxml refuses; replaced one-for-one so offsets keep their length.
_XML_UNSAFE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def markup_to_text(markup: str | None) -> str:
    """Return the text content of a marked-up blob (what a reader sees)."""
    if not markup:
        return ""
    markup = _XML_UNSAFE.sub(" ", markup)
    if "<" not in markup and "&" not in markup:
        return markup
    root = lxml_html.fragment_fromstring(markup, create_parent="div")
    return root.text_content()


@dataclass(frozen=True, order=True)
class LabeledSpan:
    start: int
    end: int
    label: str

    def as_dict(self) -> dict[str, Any]:
        return {"label": self.label, "start": self.start, "end": self.end}


@dataclass(frozen=True)
class SpanDocument:
    original: str
    spans: tuple[LabeledSpan, ...] = field(default=())

    @classmethod
    def from_markup(cls, markup: str | None) -> SpanDocument:
        return cls(markup_to_text(markup))

    # ------------------------------------------------------------------
    # Mutations (each returns a new document)
    # ------------------------------------------------------------------

    def apply_label(self, start: int, end: int, label: str) -> SpanDocument:
        """Tag ``original[start:end]`` with *label*.

        Raises SelectionError for an unknown label or a range that is empty,
        reversed, outside the text, or whitespace only. Applying a span that
        already exists is a no-op.
        """
        if label not in LABELS:
            raise SelectionError(f"Unknown label '{label}' (expected one of: {', '.join(LABELS)})")
        for value in (start, end):
            if isinstance(value, bool) or not isinstance(value, int):
                raise SelectionError("Selection offsets must be integers")
        if not 0 <= start < end <= len(self.original):
            raise SelectionError(
                f"Selection {start}-{end} is outside the text (length {len(self.original)})"
            )
        if not self.original[start:end].strip():
            raise SelectionError("Selection contains no text")
        span = LabeledSpan(start, end, label)
        if span in self.spans:
            return self
        return SpanDocument(self.original, self.spans + (span,))

    def apply_all(self, spans: Iterable[LabeledSpan | dict[str, Any]]) -> SpanDocument:
        """Apply several spans; the first invalid one aborts the whole batch."""
        doc = self
        for raw in spans:
            if isinstance(raw, LabeledSpan):
                doc = doc.apply_label(raw.start, raw.end, raw.label)
            else:
                try:
                    doc = doc.apply_label(raw["start"], raw["end"], raw["label"])
                except KeyError as exc:
                    raise SelectionError(f"Span is missing '{exc.args[0]}'") from exc
        return doc

    def remove_label(self, label: str) -> SpanDocument:
        return SpanDocument(self.original, tuple(s for s in self.spans if s.label != label))

    def reset(self) -> SpanDocument:
        return SpanDocument(self.original)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def ordered(self, label: str | None = None) -> list[LabeledSpan]:
        """Spans in document order: by start, enclosing spans before enclosed ones."""
        spans = [s for s in self.spans if label is None or s.label == label]
        return sorted(spans, key=lambda s: (s.start, -s.end, s.label))

    def extract_labeled(self, label: str) -> str:
        pieces = (self.original[s.start:s.end].strip() for s in self.ordered(label))
        return " ".join(p for p in pieces if p)

    def segments(self) -> list[tuple[str, frozenset[str]]]:
        """Split the text into maximal runs that share the same set of labels."""
        if not self.original:
            return []
        bounds = {0, len(self.original)}
        for s in self.spans:
            bounds.update((s.start, s.end))
        cuts = sorted(bounds)
        out: list[tuple[str, frozenset[str]]] = []
        for lo, hi in zip(cuts, cuts[1:]):
            labels = frozenset(s.label for s in self.spans if s.start <= lo and hi <= s.end)
            if out and out[-1][1] == labels:
                out[-1] = (out[-1][0] + self.original[lo:hi], labels)
            else:
                out.append((self.original[lo:hi], labels))
        return out
