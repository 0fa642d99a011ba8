"""Tests for the sso-fetch command line."""

import json

import pytest

import sso_fetch
from sso_auth import AuthResult, LoginFailedError
from sso_client import AuthenticatedClient
from sso_session import Cookie, url_host


@pytest.fixture(autouse=True)
def session_dir(store, monkeypatch):
    monkeypatch.setenv('SSO_FETCH_CACHE_DIR', str(store.cache_dir))
    monkeypatch.delenv('SSO_FETCH_BROWSER', raising=False)
    return store.cache_dir


@pytest.fixture
def stub_client(store, stub_auth_factory, monkeypatch):
    """Route the CLI to a client whose browser login is stubbed out."""
    events = []
    auth = stub_auth_factory([Cookie('sid', 'fresh', domain='127.0.0.1')], events)
    client = AuthenticatedClient(store=store, browser_auth=auth, verbose=False)
    monkeypatch.setattr(sso_fetch, 'build_client', lambda args, debug_log=None: client)
    return client


class TestStatusAndClear:
    """Tests for the status and clear commands."""

    def test_status_without_sessions(self, capsys):
        assert sso_fetch.main(['status']) == 0
        assert capsys.readouterr().out.strip() == 'No cached sessions found.'

    def test_status_lists_hosts_with_counts(self, store, capsys):
        store.save('b.example.com', [Cookie('x', '1')])
        store.save('a.example.com', [Cookie('x', '1'), Cookie('y', '2')])

        assert sso_fetch.main(['--quiet', 'status']) == 0

        out = capsys.readouterr().out
        assert 'Cached sessions (2):' in out
        assert out.index('a.example.com') < out.index('b.example.com')
        assert 'a.example.com (2 cookies)' in out

    def test_clear(self, store, capsys):
        store.save('a.example.com', [Cookie('x', '1')])

        assert sso_fetch.main(['clear', 'a.example.com']) == 0
        assert 'Session cleared for a.example.com' in capsys.readouterr().out
        assert store.list_hosts() == []

    def test_clear_missing_is_not_an_error(self, capsys):
        assert sso_fetch.main(['clear', 'nothing.example.com']) == 0
        assert 'No cached session' in capsys.readouterr().out


class TestRequests:
    """Tests for the HTTP verb commands."""

    def test_get_prints_response(self, stub_client, http_server, capsys):
        http_server.respond(200, {'user': 'alice', 'roles': ['admin']})

        assert sso_fetch.main(['GET', http_server.url('/api/me')]) == 0

        out = capsys.readouterr().out
        status_line = out.splitlines()[0]
        assert status_line.startswith('HTTP/1.')
        assert status_line.endswith('200 OK')
        assert 'Content-Type: application/json' in out
        assert json.dumps({'user': 'alice', 'roles': ['admin']}, indent=2) in out

    def test_post_data_is_sent_as_json(self, stub_client, http_server):
        assert sso_fetch.main(['POST', http_server.url('/api/items'), '-d', '{"name": "x"}']) == 0

        record = http_server.records[0]
        assert record['body'] == '{"name": "x"}'
        assert record['content_type'] == 'application/json'

    def test_non_json_body_printed_as_is(self, stub_client, http_server, capsys):
        http_server.respond(200, '<html>hi</html>', content_type='text/html')

        assert sso_fetch.main(['GET', http_server.url('/')]) == 0
        assert capsys.readouterr().out.rstrip().endswith('<html>hi</html>')

    def test_login_failure_exits_1(self, stub_client, http_server, capsys):
        stub_client.browser_auth.error = LoginFailedError('no cookies captured')

        assert sso_fetch.main(['GET', http_server.url('/')]) == 1
        assert capsys.readouterr().err.startswith('Error: authentication failed')

    def test_invalid_url_exits_1(self, stub_client, capsys):
        assert sso_fetch.main(['GET', 'not-a-url']) == 1
        assert 'Error:' in capsys.readouterr().err

    def test_interrupt_exits_130(self, stub_client, http_server, monkeypatch):
        def interrupted(*args, **kwargs):
            raise KeyboardInterrupt

        monkeypatch.setattr(stub_client, 'request_with_auth', interrupted)
        assert sso_fetch.main(['GET', http_server.url('/')]) == 130


class TestAuthAndToken:
    """Tests for the auth and token commands."""

    def test_auth_caches_session(self, stub_client, store, capsys):
        assert sso_fetch.main(['auth', 'https://app.example.com/']) == 0

        assert 'Authentication successful!' in capsys.readouterr().out
        assert store.list_hosts() == [url_host('https://app.example.com/')]

    def test_token_prints_jwt_and_cookies(self, stub_client, capsys):
        stub_client.browser_auth.capture_result = AuthResult(
            cookies=[Cookie('a', '1'), Cookie('b', '2')],
            local_storage={'@@auth0spajs@@::c::aud::openid': '{"body": {"access_token": "tok"}}'},
        )

        assert sso_fetch.main(['--quiet', 'token', 'https://app.example.com/']) == 0
        assert capsys.readouterr().out == 'JWT=tok\nCOOKIE=a=1; b=2\n'

    def test_token_without_jwt_warns(self, stub_client, capsys):
        stub_client.browser_auth.capture_result = AuthResult(cookies=[Cookie('a', '1')], local_storage={})

        assert sso_fetch.main(['token', 'https://app.example.com/']) == 0

        captured = capsys.readouterr()
        assert captured.out == 'COOKIE=a=1\n'
        assert 'no JWT found' in captured.err


class TestParser:
    """Tests for argument handling."""

    def test_no_command_prints_help(self, capsys):
        assert sso_fetch.main([]) == 1
        assert 'usage:' in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            sso_fetch.main(['--version'])
        assert exc_info.value.code == 0
        assert sso_fetch.__version__ in capsys.readouterr().out

    def test_unknown_browser_rejected(self):
        with pytest.raises(SystemExit):
            sso_fetch.main(['--browser', 'firefox', 'status'])

    def test_browser_default_from_environment(self, monkeypatch):
        monkeypatch.setenv('SSO_FETCH_BROWSER', 'chrome')
        args = sso_fetch.build_parser().parse_args(['status'])
        assert args.browser == 'chrome'
