from __future__ import annotations

from deepsearch.models.evidence import Reference, SearchResult, Source
from deepsearch.services.prompt_store import render_prompt
from deepsearch.tools.web_utils import clamp_text, extract_domain

MAX_EXCERPT_CHARS = 900
MAX_EXCERPTS_TOTAL_CHARS = 3200
MAX_EXCERPTS = 6
MAX_SNIPPET_CHARS = 400
MAX_VIEWPOINT_CHARS = 240
MAX_CONTENT_CHARS = 320
MAX_ERROR_SNIPPET_CHARS = 260


def normalize_excerpts(contents: list[str]) -> list[str]:
    limited: list[str] = []
    total = 0
    for entry in (c.strip() for c in contents):
        if not entry:
            continue
        piece = clamp_text(entry, MAX_EXCERPT_CHARS)
        if total + len(piece) > MAX_EXCERPTS_TOTAL_CHARS:
            break
        limited.append(piece)
        total += len(piece)
        if len(limited) >= MAX_EXCERPTS:
            break
    return limited


def source_title(url: str, fallback: str | None = None) -> str:
    domain = extract_domain(url)
    if domain and domain != url:
        return domain
    return fallback or url


def build_sources(results: list[SearchResult], references: list[Reference]) -> list[Source]:
    """Summaries of the URLs that produced at least one reference."""
    reference_ids: dict[str, list[int]] = {}
    for reference in references:
        reference_ids.setdefault(reference.url, []).append(reference.ref_id)

    sources: list[Source] = []
    for item in results:
        ids = reference_ids.get(item.url, [])
        if not ids:
            continue
        viewpoint = clamp_text(item.viewpoint.strip(), MAX_VIEWPOINT_CHARS) if item.viewpoint.strip() else None
        content = clamp_text(item.content.strip(), MAX_CONTENT_CHARS) if item.content and item.content.strip() else None
        if item.error:
            sources.append(
                Source(
                    url=item.url,
                    title=item.title or source_title(item.url),
                    snippet=f"Extraction error: {clamp_text(item.error, MAX_ERROR_SNIPPET_CHARS)}",
                    excerpts=[],
                    reference_ids=ids,
                    viewpoint=viewpoint,
                    content=content,
                    error=item.error,
                )
            )
            continue
        excerpts = normalize_excerpts([s.text for s in item.selections])
        snippet = clamp_text("\n".join(excerpts), MAX_SNIPPET_CHARS) if excerpts else ""
        sources.append(
            Source(
                url=item.url,
                title=item.title or source_title(item.url, snippet.split("\n")[0] or None),
                snippet=snippet,
                excerpts=excerpts,
                reference_ids=ids,
                viewpoint=viewpoint,
                content=content,
            )
        )
    return sources


def build_answer_prompt(query: str, references: list[Reference], errors: list[str]) -> str:
    """Prompt for the answer generator: numbered references, or an explanation request when none exist."""
    if not references:
        error_details = ""
        if errors:
            numbered = "\n".join(f"{index}. {error}" for index, error in enumerate(errors, 1))
            error_details = render_prompt("answer.error_details", errors=numbered)
        return render_prompt("answer.no_references_prompt", query=query, error_details=error_details)

    blocks = []
    for reference in references:
        blocks.append(
            "\n".join(
                [
                    f"[{reference.ref_id}] {reference.title or source_title(reference.url)}",
                    f"URL: {reference.url}",
                    f"Lines: {reference.start_line}-{reference.end_line}",
                    "Excerpt:",
                    reference.text,
                ]
            )
        )
    return render_prompt("answer.context_prompt", query=query, context="\n\n".join(blocks))
