#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "playwright",
#   "playwright-stealth",
#   "python-dotenv",
# ]
# ///
"""
SSO Fetch

Makes authenticated HTTP requests to sites behind a browser single sign-on.
The first request to a host opens Edge or Chrome for an interactive login;
the cookies are cached per host and reused until the server answers 401.

Usage:
    # Log in and cache the session for a host
    uv run sso_fetch.py auth https://app.example.com/

    # Authenticated requests (log in automatically when needed)
    uv run sso_fetch.py GET https://app.example.com/api/me
    uv run sso_fetch.py POST https://app.example.com/api/items -d '{"name": "x"}'

    # Print the captured JWT and cookies for use in scripts
    TOKEN=$(uv run sso_fetch.py token https://app.example.com | grep ^JWT= | cut -d= -f2-)

    # List or remove cached sessions
    uv run sso_fetch.py status
    uv run sso_fetch.py clear app.example.com

    # Dump a page's buttons, links and HTML while working out a login flow
    uv run sso_fetch.py inspect https://login.example.com/

Environment (also read from .env):
    SSO_FETCH_BROWSER       default browser (edge or chrome)
    SSO_FETCH_CACHE_DIR     session directory (default ~/.cache/sso-fetch/sessions)
    SSO_FETCH_BROWSER_PATH  browser executable override
    SSO_FETCH_DEBUG_PORT    remote debugging port override
    SSO_FETCH_PROFILE_DIR   browser profile directory override
"""

from __future__ import annotations

import argparse
import json
import os
import sys

import requests

from sso_auth import BrowserAuth, BrowserType
from sso_client import DEBUG_LOG_FILE, AuthenticatedClient, DebugLogger
from sso_session import SessionCache, SessionCacheError
from sso_token import TokenNotFoundError, format_token_output, jwt_expires_at, parse_auth0_token

__version__ = '0.1.0'

HTML_PREVIEW_CHARS = 5000


def build_client(args: argparse.Namespace, debug_log: DebugLogger | None = None) -> AuthenticatedClient:
    """Create the client from the global command line options."""
    verbose = not args.quiet
    store = SessionCache(verbose=verbose)
    browser_auth = BrowserAuth(
        store,
        args.browser,
        verbose=verbose,
        stealth=args.stealth,
        close_launched_browser=args.close_browser,
        login_timeout=args.login_timeout,
    )
    return AuthenticatedClient(
        store=store,
        browser_auth=browser_auth,
        verbose=verbose,
        debug_log=debug_log,
    )


def _is_json_response(response: requests.Response) -> bool:
    content_type = response.headers.get('Content-Type', '').lower()
    return 'application/json' in content_type or 'text/json' in content_type


def print_response(response: requests.Response):
    """Print the status line, headers and body, pretty-printing JSON bodies."""
    version = getattr(response.raw, 'version', 11)
    proto = 'HTTP/1.0' if version == 10 else 'HTTP/1.1'
    print(f'{proto} {response.status_code} {response.reason}')

    for name, value in response.headers.items():
        print(f'{name}: {value}')
    print()

    if _is_json_response(response) and response.content:
        try:
            print(json.dumps(response.json(), indent=2))
            return
        except ValueError:
            pass

    print(response.text)


def _progress(args: argparse.Namespace, message: str):
    if not args.quiet:
        print(message, file=sys.stderr)


def cmd_auth(client: AuthenticatedClient, args: argparse.Namespace) -> int:
    """Run the browser login for a URL and cache the cookies."""
    _progress(args, f'Authenticating to {args.url}...')
    cookies = client.authenticate(args.url)
    print(f'Authentication successful! ({len(cookies)} cookies cached)')
    return 0


def cmd_request(client: AuthenticatedClient, args: argparse.Namespace) -> int:
    """Send an authenticated request and print the response."""
    data = getattr(args, 'data', None)
    content_type = 'application/json' if data else None

    response = client.request_with_auth(args.method, args.url, data=data, content_type=content_type)
    try:
        print_response(response)
    finally:
        response.close()
    return 0


def cmd_status(client: AuthenticatedClient, args: argparse.Namespace) -> int:
    """List cached sessions."""
    hosts = client.list_sessions()
    if not hosts:
        print('No cached sessions found.')
        return 0

    print(f'Cached sessions ({len(hosts)}):')
    for host in hosts:
        try:
            cookies = client.store.load(host)
        except SessionCacheError as e:
            print(f'  - {host} (unreadable: {e})')
            continue
        expired = sum(1 for c in cookies if c.is_expired)
        detail = f'{len(cookies)} cookies'
        if expired:
            detail += f', {expired} expired'
        print(f'  - {host} ({detail})')
    return 0


def cmd_clear(client: AuthenticatedClient, args: argparse.Namespace) -> int:
    """Remove the cached session for a host."""
    if client.clear_session(args.host):
        print(f'Session cleared for {args.host}')
    else:
        print(f'No cached session for {args.host}')
    return 0


def cmd_token(client: AuthenticatedClient, args: argparse.Namespace) -> int:
    """Log in and print the captured JWT and cookies as KEY=value lines."""
    result = client.authenticate_and_capture(args.url)

    try:
        jwt = parse_auth0_token(result.local_storage)
    except TokenNotFoundError as e:
        _progress(args, f'Warning: no JWT found ({e})')
        jwt = None

    if jwt:
        expires_at = jwt_expires_at(jwt)
        if expires_at:
            _progress(args, f'  JWT expires at {expires_at.isoformat()}')

    output = format_token_output(jwt, result.cookies)
    if output:
        print(output)
    return 0


def cmd_inspect(client: AuthenticatedClient, args: argparse.Namespace) -> int:
    """Dump a page's structure to help with unfamiliar login flows."""
    info = client.browser_auth.inspect(args.url, wait_seconds=args.wait)

    print(f'URL: {info["url"]}')
    print(f'Title: {info["title"]}')

    print('\n--- BUTTONS ---')
    for i, button in enumerate(info['buttons']):
        print(f'[{i}] text={button["text"]!r} id={button["id"]!r} class={button["class"]!r}')

    print('\n--- LINKS ---')
    for i, link in enumerate(info['links']):
        print(f'[{i}] text={link["text"]!r} href={link["href"]!r}')

    html = info['html']
    print(f'\n--- HTML (first {HTML_PREVIEW_CHARS} chars) ---')
    if len(html) > HTML_PREVIEW_CHARS:
        print(html[:HTML_PREVIEW_CHARS])
        print(f'\n... ({len(html) - HTML_PREVIEW_CHARS} more chars)')
    else:
        print(html)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sso-fetch',
        description='Authenticated HTTP client for SSO-protected sites',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    default_browser = os.environ.get('SSO_FETCH_BROWSER', BrowserType.EDGE.value).lower()

    parser.add_argument('--browser', '-b', choices=[b.value for b in BrowserType], default=default_browser,
                        help=f'Browser to log in with (default: {default_browser})')
    parser.add_argument('--quiet', '-q', action='store_true', help='Suppress progress messages')
    parser.add_argument('--debug', action='store_true', help=f'Log request/response details to {DEBUG_LOG_FILE}')
    parser.add_argument('--stealth', action='store_true', help='Apply stealth patches to the login page')
    parser.add_argument('--close-browser', action='store_true',
                        help='Close the browser after login if this run launched it')
    parser.add_argument('--login-timeout', type=float, metavar='SECONDS',
                        help='Give up if login is not completed in time (default: wait forever)')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # auth command
    auth_parser = subparsers.add_parser('auth', help='Log in through the browser and cache the session')
    auth_parser.add_argument('url', help='URL that triggers the login')
    auth_parser.set_defaults(handler=cmd_auth)

    # request commands
    for method in ('GET', 'POST', 'PUT', 'DELETE'):
        request_parser = subparsers.add_parser(method, help=f'Perform an authenticated {method} request')
        request_parser.add_argument('url', help='Request URL')
        if method in ('POST', 'PUT'):
            request_parser.add_argument('--data', '-d', help='Request body (sent as application/json)')
        request_parser.set_defaults(handler=cmd_request, method=method)

    # status command
    status_parser = subparsers.add_parser('status', help='List cached sessions')
    status_parser.set_defaults(handler=cmd_status)

    # clear command
    clear_parser = subparsers.add_parser('clear', help='Remove the cached session for a host')
    clear_parser.add_argument('host', help='Host as shown by status (e.g. app.example.com)')
    clear_parser.set_defaults(handler=cmd_clear)

    # token command
    token_parser = subparsers.add_parser('token', help='Log in and print the captured JWT and cookies')
    token_parser.add_argument('url', help='URL of the single-page app')
    token_parser.set_defaults(handler=cmd_token)

    # inspect command
    inspect_parser = subparsers.add_parser('inspect', help="Dump a page's buttons, links and HTML")
    inspect_parser.add_argument('url', help='Page to inspect')
    inspect_parser.add_argument('--wait', type=float, default=5.0, metavar='SECONDS',
                                help='Seconds to let the page load (default: 5)')
    inspect_parser.set_defaults(handler=cmd_inspect)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    debug_log = DebugLogger()
    if args.debug:
        debug_log.enable()
        _progress(args, f'Debug logging to {debug_log.filepath}')

    try:
        with build_client(args, debug_log) as client:
            return args.handler(client, args)
    except KeyboardInterrupt:
        print('\nInterrupted by user.', file=sys.stderr)
        return 130
    except (RuntimeError, ValueError, OSError, requests.RequestException) as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1
    finally:
        debug_log.disable()


if __name__ == '__main__':
    sys.exit(main())
