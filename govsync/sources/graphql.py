"""Minimal GraphQL-over-HTTP helper shared by the Snapshot and Hats sources."""

from __future__ import annotations

import json
from typing import Any

import httpx

from ..exceptions import SourceError


async def graphql_query(
    client: httpx.AsyncClient,
    url: str,
    query: str,
    variables: dict[str, Any],
    source: str,
) -> dict[str, Any]:
    """
    POST a query and return its data object.

    Raises:
        SourceError: Transport error, non-2xx status, or GraphQL errors
    """
    try:
        response = await client.post(url, json={"query": query, "variables": variables})
    except httpx.HTTPError as e:
        raise SourceError(f"{source} request failed: {e}") from e

    if response.status_code != 200:
        raise SourceError(f"{source} API error: HTTP {response.status_code}")

    try:
        body = response.json()
    except ValueError as e:
        raise SourceError(f"{source} returned invalid JSON") from e

    if body.get("errors"):
        raise SourceError(f"{source} GraphQL error: {json.dumps(body['errors'])[:500]}")
    return body.get("data") or {}
