from __future__ import annotations

import json
from typing import Any

import httpx

from deepsearch.config import settings
from deepsearch.errors import FetchFailure

DEFAULT_READER_BASE_URL = "https://r.jina.ai/"


def reader_url(url: str, base_url: str | None = None) -> str:
    base = (base_url if base_url is not None else settings.jina_reader_base_url).strip()
    return f"{base or DEFAULT_READER_BASE_URL}{url}"


def content_from_body(raw: str, *, url: str) -> str:
    """Resolve a reader response body into page text.

    Bare text is returned unchanged. A JSON object yields its ``content`` field,
    then ``data.content``, and otherwise its pretty-printed form. A JSON string
    yields the string itself.
    """
    compact = raw.strip()
    if not compact.startswith(("{", '"')):
        return raw
    try:
        parsed: Any = json.loads(compact)
    except json.JSONDecodeError as exc:
        if compact.startswith('"'):
            return raw
        raise FetchFailure(f"Jina response JSON parse failed for {url}: {exc}", url=url) from exc

    if isinstance(parsed, str):
        return parsed
    if isinstance(parsed, dict):
        content = parsed.get("content")
        if isinstance(content, str):
            return content
        nested = parsed.get("data")
        if isinstance(nested, dict) and isinstance(nested.get("content"), str):
            return nested["content"]
        return json.dumps(parsed, indent=2, ensure_ascii=False)
    return raw


async def fetch_markdown(
    url: str,
    *,
    base_url: str | None = None,
    api_key: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> str:
    """Fetch readable markdown for ``url`` through the Jina reader.

    API: GET <base_url><url>
    Headers:
        - Accept: application/json
        - Authorization: Bearer <api_key> (optional)
    """
    key = api_key if api_key is not None else settings.jina_api_key
    headers = {"Accept": "application/json"}
    if key:
        headers["Authorization"] = f"Bearer {key}"

    target = reader_url(url, base_url)
    try:
        if http_client is not None:
            response = await http_client.get(target, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=settings.fetch_timeout_seconds) as client:
                response = await client.get(target, headers=headers)
    except httpx.HTTPError as exc:
        raise FetchFailure(f"Jina reader request failed: {exc}", url=url) from exc

    if not response.is_success:
        raise FetchFailure(
            f"Jina reader failed: {response.status_code}",
            url=url,
            status_code=response.status_code,
        )
    return content_from_body(response.text, url=url)
