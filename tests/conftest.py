"""Shared fixtures: a temporary session store, a local HTTP server and a stub browser login."""

import json
import os
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from sso_session import SessionCache, url_host


class RecordingHandler(BaseHTTPRequestHandler):
    """Records every request and answers from the server's queue of canned responses."""

    def _handle(self):
        length = int(self.headers.get('Content-Length') or 0)
        body = self.rfile.read(length).decode('utf-8') if length else ''

        server = self.server
        with server.lock:
            server.records.append({
                'method': self.command,
                'path': self.path,
                'cookie': self.headers.get('Cookie'),
                'content_type': self.headers.get('Content-Type'),
                'body': body,
            })
            server.events.append(f'{self.command} {self.path}')
            status, payload, content_type, extra_headers = (
                server.responses.pop(0) if server.responses else server.default_response
            )

        data = payload.encode('utf-8')
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        for name, value in extra_headers.items():
            self.send_header(name, value)
        self.send_header('Content-Length', str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    do_GET = _handle
    do_POST = _handle
    do_PUT = _handle
    do_DELETE = _handle

    def log_message(self, format, *args):
        pass


class LocalServer:
    """Handle on the running test server."""

    def __init__(self, httpd: ThreadingHTTPServer):
        self.httpd = httpd

    @property
    def base_url(self) -> str:
        host, port = self.httpd.server_address[:2]
        return f'http://{host}:{port}'

    def url(self, path: str = '/') -> str:
        return self.base_url + path

    @property
    def records(self) -> list[dict]:
        return self.httpd.records

    @property
    def events(self) -> list[str]:
        return self.httpd.events

    def respond(self, status: int, body='', content_type: str = 'application/json', headers: dict | None = None):
        """Queue a response for the next request."""
        if not isinstance(body, str):
            body = json.dumps(body)
        self.httpd.responses.append((status, body, content_type, headers or {}))


@pytest.fixture
def http_server():
    httpd = ThreadingHTTPServer(('127.0.0.1', 0), RecordingHandler)
    httpd.lock = threading.Lock()
    httpd.records = []
    httpd.events = []
    httpd.responses = []
    httpd.default_response = (200, json.dumps({'ok': True}), 'application/json', {})

    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield LocalServer(httpd)
    finally:
        httpd.shutdown()
        httpd.server_close()
        thread.join(timeout=5)


@pytest.fixture
def store(tmp_path):
    return SessionCache(tmp_path / 'sessions')


class StubBrowserAuth:
    """Stands in for the browser login: saves a fixed cookie list and records the call."""

    def __init__(self, store: SessionCache, cookies, events: list[str], error: Exception | None = None):
        self.store = store
        self.cookies = list(cookies)
        self.events = events
        self.error = error
        self.calls = []
        self.capture_result = None

    def authenticate(self, url: str):
        self.calls.append(url)
        self.events.append('authenticate')
        if self.error is not None:
            raise self.error
        self.store.save(url_host(url), self.cookies)
        return self.cookies

    def authenticate_and_capture(self, url: str):
        self.calls.append(url)
        self.events.append('capture')
        if self.error is not None:
            raise self.error
        return self.capture_result


@pytest.fixture
def stub_auth_factory(store):
    def make(cookies, events, error=None):
        return StubBrowserAuth(store, cookies, events, error)
    return make


@pytest.fixture
def pipe():
    """A (reader, writer) text pipe standing in for the terminal."""
    if os.name == 'nt':
        pytest.skip('select() on pipes is not supported on Windows')
    r, w = os.pipe()
    reader = os.fdopen(r, 'r')
    writer = os.fdopen(w, 'w')
    yield reader, writer
    for f in (reader, writer):
        try:
            f.close()
        except OSError:
            pass
