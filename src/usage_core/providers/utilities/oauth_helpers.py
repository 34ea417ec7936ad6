# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Shared OAuth helpers: token-endpoint POSTs and JWT claim decoding.
"""

import base64
import json
import logging
from typing import Any, Dict, Iterable, Optional

import httpx

from ...errors import RefreshError, RefreshFailure

lib_logger = logging.getLogger("usage_core")

TOKEN_REQUEST_TIMEOUT = 30.0


async def post_token_grant(
    client: httpx.AsyncClient,
    url: str,
    provider: str,
    form: Optional[Dict[str, str]] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    POST a refresh grant (form-encoded or JSON) and return the decoded body.

    Non-2xx maps to REFRESH_REJECTED with the status code; a 2xx without a
    usable ``access_token`` maps to INVALID_RESPONSE. Transport errors are
    left to propagate as httpx errors.
    """
    headers = {"Accept": "application/json"}
    if form is not None:
        response = await client.post(
            url, data=form, headers=headers, timeout=TOKEN_REQUEST_TIMEOUT
        )
    else:
        response = await client.post(
            url, json=payload or {}, headers=headers, timeout=TOKEN_REQUEST_TIMEOUT
        )

    if response.status_code >= 400:
        message = response.text[:200]
        try:
            error_data = response.json()
            if isinstance(error_data, dict):
                message = (
                    error_data.get("error_description")
                    or error_data.get("error")
                    or message
                )
                if isinstance(message, dict):
                    message = message.get("message") or json.dumps(message)
        except ValueError:
            pass  # Body is not JSON; keep the raw excerpt
        lib_logger.warning(
            f"{provider} token refresh rejected (HTTP {response.status_code}): {message}"
        )
        raise RefreshError(
            RefreshFailure.REFRESH_REJECTED,
            status_code=response.status_code,
            message=str(message),
            provider=provider,
        )

    try:
        data = response.json()
    except ValueError:
        raise RefreshError(
            RefreshFailure.INVALID_RESPONSE,
            message="token endpoint returned non-JSON body",
            provider=provider,
        )
    if not isinstance(data, dict) or not isinstance(data.get("access_token"), str):
        raise RefreshError(
            RefreshFailure.INVALID_RESPONSE,
            message="token response has no access_token",
            provider=provider,
        )
    return data


def parse_scopes(value: Any) -> frozenset:
    """Scopes from a list or a space-separated string."""
    if isinstance(value, str):
        return frozenset(s for s in value.split() if s)
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(str(s) for s in value if s)
    return frozenset()


def first_string(data: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def decode_jwt_claims(token: str) -> Dict[str, Any]:
    """
    Decode the (unverified) claims segment of a JWT.

    Returns an empty dict for anything that is not a three-part JWT.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1]
    # Add padding if needed
    padding = 4 - len(payload) % 4
    if padding != 4:
        payload += "=" * padding
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (ValueError, TypeError):
        return {}
    return claims if isinstance(claims, dict) else {}
