# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Candidate endpoint search.

Usage endpoints are undocumented and drift between releases, so a probe
walks a list of base URLs x paths and keeps the first response that parses
into a snapshot. An Unauthorized response stops the walk at once: the
token is bad, not the endpoint.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from ...errors import ProbeError, ProbeFailure
from ...types import UsageSnapshot

lib_logger = logging.getLogger("usage_core")

PROBE_REQUEST_TIMEOUT = 30.0


def dedupe(values: Iterable[Optional[str]]) -> List[str]:
    """Drop empties and repeats (ignoring a trailing slash), keep order."""
    seen = set()
    result = []
    for value in values:
        if not value:
            continue
        key = value.rstrip("/")
        if key in seen:
            continue
        seen.add(key)
        result.append(key)
    return result


def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def validate_url(url: str) -> httpx.URL:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError) as e:
        raise ProbeError(ProbeFailure.INVALID_URL, message=f"{url}: {e}")
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ProbeError(ProbeFailure.INVALID_URL, message=url)
    return parsed


async def probe_candidates(
    client: httpx.AsyncClient,
    urls: Iterable[str],
    headers: Dict[str, str],
    parse: Callable[[Any], Optional[UsageSnapshot]],
    provider: str,
    method: str = "GET",
    json_body: Optional[Dict[str, Any]] = None,
) -> UsageSnapshot:
    """
    Return the first candidate response that ``parse`` accepts.

    Raises the Unauthorized ProbeError immediately, otherwise the last
    candidate error once every URL has been tried.
    """
    last_error: Optional[ProbeError] = None
    for url in urls:
        try:
            validate_url(url)
            response = await client.request(
                method,
                url,
                headers=headers,
                json=json_body,
                timeout=PROBE_REQUEST_TIMEOUT,
            )
        except ProbeError as e:
            last_error = e
            continue
        except httpx.HTTPError as e:
            lib_logger.debug(f"{provider} candidate {url} failed: {e}")
            last_error = ProbeError(
                ProbeFailure.HTTP_ERROR, message=f"{type(e).__name__}: {e}"
            )
            continue

        if response.status_code >= 400:
            error = ProbeError.from_response(response)
            if error.is_unauthorized:
                raise error
            lib_logger.debug(
                f"{provider} candidate {url} returned HTTP {response.status_code}"
            )
            last_error = error
            continue

        try:
            data = response.json()
        except ValueError:
            last_error = ProbeError(
                ProbeFailure.INVALID_RESPONSE, message=f"{url} returned non-JSON"
            )
            continue

        snapshot = parse(data)
        if snapshot is not None:
            lib_logger.debug(f"{provider} usage served by {url}")
            return snapshot
        last_error = ProbeError(
            ProbeFailure.NO_DATA, message=f"{url} returned an unrecognized payload"
        )

    raise last_error or ProbeError(ProbeFailure.NO_DATA, message="no usage endpoint")
