"""
Authenticated HTTP Client

Sends requests with the cookies captured by an SSO browser login. When no
session is cached, or the server answers 401, the browser login runs and the
request is retried once.

Usage:
    from sso_client import AuthenticatedClient

    client = AuthenticatedClient(browser_type='edge')
    response = client.get_with_auth('https://app.example.com/api/me')
    print(response.json())
"""

from __future__ import annotations

import json
import sys
from datetime import datetime
from pathlib import Path

import requests
from requests.adapters import HTTPAdapter
from requests.cookies import RequestsCookieJar
from urllib3.util.retry import Retry

from sso_auth import AuthError, AuthResult, BrowserAuth, BrowserType
from sso_session import Cookie, SessionCache, SessionCacheError, cookies_for_host, url_host, url_hostname


# Debug log file - captures full request/response details
DEBUG_LOG_FILE = Path('sso_fetch_debug.log')

DEFAULT_TIMEOUT_SECONDS = 30

MAX_LOGGED_VALUE = 100


def _truncate(value: str, limit: int = MAX_LOGGED_VALUE) -> str:
    return value[:limit] + '...' if len(value) > limit else value


class DebugLogger:
    """Writes a trace of every request the client sends, for diagnosing expired or missing sessions."""

    def __init__(self, filepath: Path = DEBUG_LOG_FILE):
        self.filepath = filepath
        self.enabled = False
        self._file = None

    def enable(self):
        self.enabled = True
        self._file = open(self.filepath, 'w', encoding='utf-8')
        self._write(f'=== SSO Fetch Debug Log ({datetime.now().isoformat()}) ===')

    def disable(self):
        if self._file:
            self._file.close()
            self._file = None
        self.enabled = False

    def _write(self, text: str):
        if self._file:
            self._file.write(text + '\n')
            self._file.flush()

    def log_section(self, title: str):
        if not self.enabled:
            return
        self._write('')
        self._write('=' * 80)
        self._write(f'  {title}')
        self._write('=' * 80)

    def log_cookies(self, cookies: list[Cookie], label: str = 'Cached Cookies'):
        if not self.enabled:
            return
        self._write(f'\n--- {label} ({len(cookies)}) ---')
        for cookie in cookies:
            expires = cookie.expires.isoformat() if cookie.expires else 'session'
            self._write(f'  {cookie.name}={_truncate(cookie.value)}')
            self._write(f'    domain={cookie.domain or "(host)"} path={cookie.path} '
                        f'secure={cookie.secure} expires={expires}')

    def log_exchange(self, response: requests.Response):
        """Log each hop of a request, following redirects, then the final response body."""
        if not self.enabled:
            return
        for hop in [*response.history, response]:
            sent = hop.request
            self._write(f'\n>>> REQUEST: {sent.method} {sent.url}')
            for k, v in sent.headers.items():
                self._write(f'  {k}: {_mask_header(k, v)}')
            if sent.body:
                self._write(f'  [body] {_truncate(str(sent.body), 500)}')

            self._write(f'<<< RESPONSE: {hop.status_code} {hop.reason}')
            for k, v in hop.headers.items():
                self._write(f'  {k}: {_mask_header(k, v)}')

        self._write('--- Response Body ---')
        if not response.content:
            self._write('[empty]')
            return
        if 'json' in response.headers.get('Content-Type', ''):
            try:
                self._write(json.dumps(response.json(), indent=2)[:4000])
                return
            except ValueError:
                pass
        self._write(_truncate(response.text, 2000))


def _mask_header(name: str, value: str) -> str:
    """Show cookie names but only the start of their values."""
    if name.lower() not in ('cookie', 'set-cookie'):
        return _truncate(str(value), 200)
    pairs = []
    for pair in value.split(';'):
        key, sep, val = pair.strip().partition('=')
        pairs.append(f'{key}{sep}{val[:8]}...' if len(val) > 8 else pair.strip())
    return '; '.join(pairs)


def build_cookie_jar(cookies: list[Cookie], request_host: str) -> RequestsCookieJar:
    """
    Put matched cookies in a per-request jar.

    Cookies keep their domain scope, so requests re-sends them on redirects
    within that scope and drops them on redirects elsewhere. Host-only
    cookies are pinned to request_host. Path and secure flags are not
    applied, as the domain matcher does not apply them either.
    """
    jar = RequestsCookieJar()
    for cookie in cookies:
        jar.set(cookie.name, cookie.value, domain=cookie.domain or request_host, path='/')
    return jar


def create_session() -> requests.Session:
    """Create a requests session with retry logic and connection pooling."""
    session = requests.Session()

    # POST is not retried; it may not be idempotent
    retry_strategy = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=['GET', 'PUT', 'DELETE'],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=10,
        pool_maxsize=10,
    )
    session.mount('https://', adapter)
    session.mount('http://', adapter)

    session.headers.update({
        'Accept': 'application/json, text/plain, */*',
        'Connection': 'keep-alive',
    })

    return session


class AuthenticatedClient:
    """
    HTTP client that attaches cached SSO cookies to every request.

    Cookies are loaded from the store on each request, keyed by the URL's
    host (and port). The plain verbs never trigger a login; the *_with_auth
    verbs log in through the browser when needed.
    """

    def __init__(
        self,
        store: SessionCache | None = None,
        browser_auth: BrowserAuth | None = None,
        browser_type: BrowserType | str = BrowserType.EDGE,
        verbose: bool = True,
        debug_log: DebugLogger | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.store = store if store is not None else SessionCache(verbose=verbose)
        if browser_auth is None:
            browser_auth = BrowserAuth(self.store, browser_type, verbose=verbose)
        self.browser_auth = browser_auth
        self.verbose = verbose
        self.debug_log = debug_log if debug_log is not None else DebugLogger()
        self.timeout = timeout
        self.session = create_session()

    def _log(self, message: str):
        if self.verbose:
            print(message, file=sys.stderr)

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ── Plain requests ────────────────────────────────────────────

    def request(
        self,
        method: str,
        url: str,
        data: str | bytes | None = None,
        content_type: str | None = None,
        headers: dict | None = None,
    ) -> requests.Response:
        """
        Send a request carrying the cached cookies that apply to the URL.

        The response is returned as-is, including 401s.
        """
        host = url_host(url)
        hostname = url_hostname(url)
        cookies = cookies_for_host(self.store.load(host), hostname)

        request_headers = dict(headers or {})
        if content_type:
            request_headers['Content-Type'] = content_type

        method = method.upper()
        self.debug_log.log_section(f'{method} {url}')
        self.debug_log.log_cookies(cookies)

        # Only the cached session is sent, never cookies left over from earlier responses
        self.session.cookies.clear()
        response = self.session.request(
            method,
            url,
            data=data,
            headers=request_headers,
            cookies=build_cookie_jar(cookies, hostname),
            timeout=self.timeout,
        )

        self.debug_log.log_exchange(response)
        return response

    def get(self, url: str, headers: dict | None = None) -> requests.Response:
        return self.request('GET', url, headers=headers)

    def post(self, url: str, data=None, content_type: str | None = None, headers: dict | None = None) -> requests.Response:
        return self.request('POST', url, data, content_type, headers)

    def put(self, url: str, data=None, content_type: str | None = None, headers: dict | None = None) -> requests.Response:
        return self.request('PUT', url, data, content_type, headers)

    def delete(self, url: str, headers: dict | None = None) -> requests.Response:
        return self.request('DELETE', url, headers=headers)

    # ── Requests with automatic login ─────────────────────────────

    def request_with_auth(
        self,
        method: str,
        url: str,
        data: str | bytes | None = None,
        content_type: str | None = None,
        headers: dict | None = None,
    ) -> requests.Response:
        """
        Send a request, logging in through the browser first if there is no session.

        A 401 triggers one fresh login and one retry. Whatever the retry
        returns is handed back, even another 401.
        """
        host = url_host(url)

        if not self.store.has_session(host):
            self._log(f'No cached session for {host}, authenticating...')
            try:
                self.authenticate(url)
            except (AuthError, SessionCacheError) as e:
                raise AuthError(f'authentication failed: {e}') from e

        response = self.request(method, url, data, content_type, headers)

        if response.status_code != 401:
            return response

        self._log('Got 401, re-authenticating...')
        response.close()
        try:
            self.authenticate(url)
        except (AuthError, SessionCacheError) as e:
            raise AuthError(f're-authentication failed: {e}') from e

        return self.request(method, url, data, content_type, headers)

    def get_with_auth(self, url: str, headers: dict | None = None) -> requests.Response:
        return self.request_with_auth('GET', url, headers=headers)

    def post_with_auth(self, url: str, data=None, content_type: str | None = None, headers: dict | None = None) -> requests.Response:
        return self.request_with_auth('POST', url, data, content_type, headers)

    def put_with_auth(self, url: str, data=None, content_type: str | None = None, headers: dict | None = None) -> requests.Response:
        return self.request_with_auth('PUT', url, data, content_type, headers)

    def delete_with_auth(self, url: str, headers: dict | None = None) -> requests.Response:
        return self.request_with_auth('DELETE', url, headers=headers)

    # ── Session management ────────────────────────────────────────

    def authenticate(self, url: str) -> list[Cookie]:
        return self.browser_auth.authenticate(url)

    def authenticate_and_capture(self, url: str) -> AuthResult:
        return self.browser_auth.authenticate_and_capture(url)

    def list_sessions(self) -> list[str]:
        return self.store.list_hosts()

    def clear_session(self, host: str) -> bool:
        return self.store.clear(host)

    def has_session(self, host: str) -> bool:
        return self.store.has_session(host)
