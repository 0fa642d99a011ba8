"""
Token extraction from captured browser storage.

Single-page apps built on the Auth0 SPA SDK keep their access token in
localStorage under keys prefixed with ``@@auth0spajs@@``. These helpers pull
that token out of a storage snapshot and format it for shell scripts.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone

from sso_session import Cookie

AUTH0_CACHE_PREFIX = '@@auth0spajs@@'

# Evaluated in the page; returns every localStorage entry as a JSON string
LOCAL_STORAGE_JS = """() => {
    const result = {};
    for (let i = 0; i < localStorage.length; i++) {
        const key = localStorage.key(i);
        result[key] = localStorage.getItem(key);
    }
    return JSON.stringify(result);
}"""


class TokenNotFoundError(ValueError):
    """Raised when no usable access token can be recovered from storage."""


def parse_local_storage_json(text: str) -> dict[str, str]:
    """Parse the JSON produced by LOCAL_STORAGE_JS into a flat string map."""
    entries = json.loads(text)
    if not isinstance(entries, dict):
        raise ValueError('localStorage snapshot is not a JSON object')
    for key, value in entries.items():
        if not isinstance(value, str):
            raise ValueError(f'localStorage entry "{key}" is not a string')
    return entries


def parse_auth0_token(local_storage: dict[str, str]) -> str:
    """
    Find the Auth0 SPA SDK cache entry and return its access_token.

    The entry value looks like:
        {"body": {"access_token": ..., "expires_in": ..., "token_type": ...}, "expiresAt": ...}

    Only one such entry is expected, so the first matching key is used.
    """
    for key, value in local_storage.items():
        if not key.startswith(AUTH0_CACHE_PREFIX):
            continue

        try:
            entry = json.loads(value)
        except (TypeError, json.JSONDecodeError) as e:
            raise TokenNotFoundError(f'failed to parse Auth0 cache entry: {e}') from e

        body = entry.get('body') if isinstance(entry, dict) else None
        if not isinstance(body, dict):
            raise TokenNotFoundError('Auth0 cache entry has no body')

        access_token = body.get('access_token')
        if not isinstance(access_token, str) or not access_token:
            raise TokenNotFoundError('Auth0 cache entry has no access_token')

        return access_token

    raise TokenNotFoundError('no Auth0 token found in localStorage')


def format_token_output(jwt: str | None, cookies: list[Cookie] | None) -> str:
    """Format a JWT and cookies as KEY=value lines for stdout."""
    lines = []

    if jwt:
        lines.append(f'JWT={jwt}')

    if cookies:
        lines.append('COOKIE=' + '; '.join(f'{c.name}={c.value}' for c in cookies))

    return '\n'.join(lines)


def jwt_expires_at(token: str) -> datetime | None:
    """
    Read the exp claim of a JWT without verifying it.

    Returns None if the token is not a JWT or carries no expiry.
    """
    parts = token.split('.')
    if len(parts) != 3:
        return None

    # Decode the payload (middle part), adding padding as needed
    payload_b64 = parts[1]
    padding = 4 - len(payload_b64) % 4
    if padding != 4:
        payload_b64 += '=' * padding

    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64))
    except (ValueError, json.JSONDecodeError):
        return None

    exp_timestamp = payload.get('exp') if isinstance(payload, dict) else None
    if not isinstance(exp_timestamp, (int, float)) or isinstance(exp_timestamp, bool):
        return None

    return datetime.fromtimestamp(exp_timestamp, tz=timezone.utc)
