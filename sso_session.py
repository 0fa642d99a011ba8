"""
Session Cache

Persists browser-captured cookies on disk, one JSON file per host, so that
later invocations can reuse an SSO login without opening the browser again.

Usage:
    from sso_session import SessionCache

    cache = SessionCache()
    cookies = cache.load('app.example.com')
"""

from __future__ import annotations

import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from urllib.parse import quote, unquote, urlsplit

DEFAULT_CACHE_DIR = Path.home() / '.cache' / 'sso-fetch' / 'sessions'

SESSION_SUFFIX = '.json'

DEFAULT_PORTS = {'http': ':80', 'https': ':443'}


class SessionCacheError(RuntimeError):
    """Raised when a cached session file cannot be read or written."""


class SameSite(str, Enum):
    STRICT = 'Strict'
    LAX = 'Lax'
    NONE = 'None'
    UNSPECIFIED = 'Unspecified'

    @classmethod
    def parse(cls, value: str | None) -> 'SameSite':
        """Map a browser sameSite attribute to the enum; unknown values are unspecified."""
        for member in (cls.STRICT, cls.LAX, cls.NONE):
            if value == member.value:
                return member
        return cls.UNSPECIFIED


@dataclass(frozen=True)
class Cookie:
    """A cookie captured from the browser's cookie jar."""

    name: str
    value: str
    domain: str = ''
    path: str = '/'
    expires: datetime | None = None
    max_age: int = 0
    secure: bool = False
    http_only: bool = False
    same_site: SameSite = SameSite.UNSPECIFIED

    @property
    def is_expired(self) -> bool:
        if self.expires is None:
            return False
        return self.expires <= datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'value': self.value,
            'path': self.path,
            'domain': self.domain,
            'expires': self.expires.isoformat() if self.expires else None,
            'maxAge': self.max_age,
            'secure': self.secure,
            'httpOnly': self.http_only,
            'sameSite': self.same_site.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Cookie':
        """Build a cookie from a stored record. Raises ValueError on bad shape."""
        if not isinstance(data, dict):
            raise ValueError(f'cookie record must be an object, got {type(data).__name__}')
        name = data.get('name')
        value = data.get('value', '')
        if not isinstance(name, str) or not name:
            raise ValueError('cookie record has no name')
        if not isinstance(value, str):
            raise ValueError(f'cookie "{name}" has a non-string value')

        return cls(
            name=name,
            value=value,
            domain=data.get('domain') or '',
            path=data.get('path') or '/',
            expires=_parse_expires(data.get('expires')),
            max_age=int(data.get('maxAge') or 0),
            secure=bool(data.get('secure', False)),
            http_only=bool(data.get('httpOnly', False)),
            same_site=SameSite.parse(data.get('sameSite')),
        )


def _parse_expires(value) -> datetime | None:
    """Accept an ISO-8601 timestamp, an epoch number, or null."""
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f'invalid cookie expiry: {value!r}')
    if isinstance(value, (int, float)):
        # CDP reports -1 for session cookies
        if value <= 0:
            return None
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise ValueError(f'invalid cookie expiry: {value!r}')


def cookie_matches_domain(cookie_domain: str, request_host: str) -> bool:
    """
    Decide whether a cookie scoped to cookie_domain is sent to request_host.

    An empty domain has no restriction. A single leading dot is ignored on
    both sides; the host must equal the domain or be a subdomain of it.
    """
    if not cookie_domain:
        return True

    domain = cookie_domain[1:] if cookie_domain.startswith('.') else cookie_domain
    host = request_host[1:] if request_host.startswith('.') else request_host

    return host == domain or host.endswith('.' + domain)


def cookies_for_host(cookies: list[Cookie], request_host: str) -> list[Cookie]:
    """Filter cookies down to the ones that apply to request_host, keeping order."""
    return [c for c in cookies if cookie_matches_domain(c.domain, request_host)]


class SessionCache:
    """
    Host-keyed cookie store.

    Each host gets its own file, so saves for different hosts never touch each
    other. Saves replace the whole file atomically; concurrent logins for the
    same host are last-writer-wins.
    """

    def __init__(self, cache_dir: Path | str | None = None, verbose: bool = False):
        if cache_dir is None:
            cache_dir = os.environ.get('SSO_FETCH_CACHE_DIR') or DEFAULT_CACHE_DIR
        self.cache_dir = Path(cache_dir).expanduser()
        self.verbose = verbose

    def _log(self, message: str):
        if self.verbose:
            print(message, file=sys.stderr)

    def session_path(self, host: str) -> Path:
        """Return the file holding the session for host."""
        if not host:
            raise ValueError('host must not be empty')
        return self.cache_dir / f'{quote(host, safe=".-")}{SESSION_SUFFIX}'

    def save(self, host: str, cookies: list[Cookie]) -> Path:
        """Replace the stored cookies for host with the given list."""
        path = self.session_path(host)
        self.cache_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

        payload = json.dumps([c.to_dict() for c in cookies], indent=2)

        fd, tmp_name = tempfile.mkstemp(prefix='.session-', suffix='.tmp', dir=self.cache_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(payload)
            os.chmod(tmp_name, 0o600)  # Contains auth cookies
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise SessionCacheError(f'failed to write session file {path}: {e}') from e

        self._log(f'  Session cached to {path}')
        return path

    def load(self, host: str) -> list[Cookie]:
        """Return the stored cookies for host, or an empty list when none are cached."""
        path = self.session_path(host)
        if not path.exists():
            return []

        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except OSError as e:
            raise SessionCacheError(f'failed to read session file {path}: {e}') from e
        except json.JSONDecodeError as e:
            raise SessionCacheError(f'session file {path} is not valid JSON: {e}') from e

        if not isinstance(data, list):
            raise SessionCacheError(f'session file {path} does not contain a cookie list')

        try:
            return [Cookie.from_dict(record) for record in data]
        except (TypeError, ValueError) as e:
            raise SessionCacheError(f'session file {path} has a malformed cookie: {e}') from e

    def has_session(self, host: str) -> bool:
        return len(self.load(host)) > 0

    def clear(self, host: str) -> bool:
        """Delete the stored session for host. Returns False if there was nothing to delete."""
        path = self.session_path(host)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise SessionCacheError(f'failed to delete session file {path}: {e}') from e

        self._log(f'  Session cleared for {host}')
        return True

    def list_hosts(self) -> list[str]:
        """List every host with a cached session."""
        if not self.cache_dir.is_dir():
            return []

        hosts = []
        for entry in self.cache_dir.iterdir():
            if not entry.is_file() or not entry.name.endswith(SESSION_SUFFIX):
                continue
            hosts.append(unquote(entry.name[:-len(SESSION_SUFFIX)]))
        return sorted(hosts)


class InvalidURLError(ValueError):
    """Raised for target URLs that are not absolute http(s) URLs."""


def _split_target(url: str):
    try:
        parsed = urlsplit(url)
    except ValueError as e:
        raise InvalidURLError(f'failed to parse target URL {url!r}: {e}') from e

    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise InvalidURLError(f'target URL must be an absolute http(s) URL: {url!r}')
    return parsed


def url_host(url: str) -> str:
    """
    Return the authority of url, the key sessions are stored under.

    The host is lowercased and a default port is dropped, matching what the
    browser reports once it has navigated there.
    """
    parsed = _split_target(url)
    host = parsed.netloc.rpartition('@')[2].lower()
    default_port = DEFAULT_PORTS[parsed.scheme]
    if host.endswith(default_port):
        host = host[:-len(default_port)]
    return host


def url_hostname(url: str) -> str:
    """Return the bare host name of url, as compared against cookie domains."""
    return _split_target(url).hostname or ''
