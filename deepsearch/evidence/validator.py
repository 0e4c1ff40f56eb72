"""Cross-checks claimed evidence against what extraction actually produced.

Claimed selections are never trusted: each one is intersected with the
selections extraction returned for the same URL, and only the overlapping
spans, with text re-read from the extracted content, survive.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace

from loguru import logger

from deepsearch.errors import ValidationDropped
from deepsearch.evidence.lines import (
    derive_numbered_content,
    numbered_content_for_range,
    overlap,
    strip_line_numbers,
)
from deepsearch.models.evidence import LineRange, LineSelection, SearchResult


@dataclass(slots=True)
class ExtractedEvidence:
    """Selections extraction produced for one URL, plus their line-numbered content."""

    selections: list[LineSelection] = field(default_factory=list)
    contents_by_range: dict[str, str] = field(default_factory=dict)

    def add(self, selections: list[LineSelection], lines: list[str]) -> None:
        known = {s.key for s in self.selections}
        for selection in selections:
            if selection.key not in known:
                self.selections.append(selection)
                known.add(selection.key)
            self.contents_by_range[selection.bounds.key] = numbered_content_for_range(
                lines, selection.bounds
            )

    def text_for(self, span: LineRange) -> str | None:
        for selection in self.selections:
            if selection.start == span.start and selection.end == span.end:
                return selection.text
        numbered = derive_numbered_content(span, self.contents_by_range)
        if numbered is None:
            return None
        return strip_line_numbers(numbered) or None


@dataclass(slots=True)
class ValidationReport:
    results: list[SearchResult]
    issues: list[ValidationDropped]

    @property
    def messages(self) -> list[str]:
        return [str(issue) for issue in self.issues]


def _maximal_overlaps(claimed: list[LineSelection], extracted: list[LineSelection]) -> list[LineRange]:
    spans: dict[str, LineRange] = {}
    for candidate in claimed:
        for source in extracted:
            common = overlap(candidate.bounds, source.bounds)
            if common is not None:
                spans[common.key] = common
    # Spans nested inside a larger surviving span add nothing and would make
    # a second validation pass produce a different set.
    maximal = [
        span
        for span in spans.values()
        if not any(other != span and other.contains(span) for other in spans.values())
    ]
    return sorted(maximal, key=lambda s: (s.start, s.end))


def validate_item(
    item: SearchResult,
    evidence: ExtractedEvidence | None,
) -> tuple[SearchResult | None, list[ValidationDropped]]:
    if item.broken or item.irrelevant:
        return replace(item, selections=[]), []
    if not item.selections:
        return item, []
    if evidence is None or not evidence.selections:
        return None, [
            ValidationDropped(
                f"finalize returned selections but no extracted selections exist for URL: {item.url}",
                url=item.url,
            )
        ]

    resolved: list[LineSelection] = []
    for span in _maximal_overlaps(item.selections, evidence.selections):
        text = evidence.text_for(span)
        if text:
            resolved.append(LineSelection(span.start, span.end, text))

    if not resolved:
        return None, [
            ValidationDropped(
                f"finalize returned non-overlapping selections for URL: {item.url}; dropped this result item.",
                url=item.url,
            )
        ]

    issues: list[ValidationDropped] = []
    claimed_bounds = {s.bounds.key for s in item.selections}
    if {s.bounds.key for s in resolved} != claimed_bounds:
        issues.append(
            ValidationDropped(
                f"finalize selections clipped to extracted subset for URL: {item.url}",
                url=item.url,
            )
        )
    return replace(item, selections=resolved, error=None), issues


def validate_results(
    items: list[SearchResult],
    evidence_by_url: dict[str, ExtractedEvidence],
    extracted_urls: set[str] | None = None,
) -> ValidationReport:
    """Validate every item; unknown URLs and items without overlap are dropped."""
    known_urls = extracted_urls if extracted_urls is not None else set(evidence_by_url)
    results: list[SearchResult] = []
    issues: list[ValidationDropped] = []
    for item in items:
        if item.url not in known_urls:
            issues.append(
                ValidationDropped(f"finalize returned URL that was never extracted: {item.url}", url=item.url)
            )
            continue
        validated, item_issues = validate_item(item, evidence_by_url.get(item.url))
        issues.extend(item_issues)
        if validated is not None:
            results.append(validated)

    for issue in issues:
        logger.warning(f"validator.issue url={issue.url} detail={issue}")
    return ValidationReport(results=results, issues=issues)
