"""
SSO Browser Authentication

Drives a real Edge or Chrome instance over the Chrome DevTools Protocol to get
through an interactive single sign-on flow, then captures the resulting
cookies (and optionally localStorage) for reuse with requests.

The site gives no signal that login has finished, so completion is judged by
a heuristic: the page URL has settled back on the original host for a few
seconds. Pressing Enter in the terminal always ends the wait.

Usage:
    from sso_auth import BrowserAuth
    from sso_session import SessionCache

    auth = BrowserAuth(SessionCache(), browser_type='edge')
    cookies = auth.authenticate('https://app.example.com/')
"""

from __future__ import annotations

import os
import select
import shutil
import subprocess
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, TextIO
from urllib.parse import urlsplit

import requests
from dotenv import load_dotenv
from playwright.sync_api import Browser, Page, Playwright, sync_playwright
from playwright.sync_api import Error as PlaywrightError
from playwright_stealth import Stealth

from sso_session import Cookie, InvalidURLError, SessionCache, url_host
from sso_token import LOCAL_STORAGE_JS, parse_local_storage_json

load_dotenv()


DEBUG_HOST = '127.0.0.1'

# Debug port liveness check and browser launch polling
LIVENESS_TIMEOUT_SECONDS = 0.5
LAUNCH_POLL_INTERVAL_SECONDS = 0.5
LAUNCH_POLL_ATTEMPTS = 30

# Login completion heuristic
STABILITY_THRESHOLD_SECONDS = 3.0
URL_POLL_INTERVAL_SECONDS = 0.5
MANUAL_POLL_INTERVAL_SECONDS = 0.2

# Auth0 SPA flow: /landing -> Auth0 -> IdP -> Auth0 callback -> app route.
# Settling on /landing means the redirect chain has not started yet.
DEFAULT_LANDING_PATHS = ('/landing', '/landing/')

STABLE = 'stable'
MANUAL = 'manual'


class AuthError(RuntimeError):
    """Base class for browser authentication failures."""


class BrowserLaunchError(AuthError):
    """The browser could not be started or its debug port never opened."""


class LoginFailedError(AuthError):
    """The login flow finished but left nothing usable behind."""


class LoginTimeoutError(AuthError):
    """Login completion was not detected within the configured timeout."""


class UnsupportedBrowserError(ValueError):
    """Raised for browser names other than edge and chrome."""


class PageUnavailableError(RuntimeError):
    """The controlled page went away while it was being watched."""


# ---------------------------------------------------------------------------
# Browser configuration
# ---------------------------------------------------------------------------

class BrowserType(str, Enum):
    EDGE = 'edge'
    CHROME = 'chrome'

    @classmethod
    def parse(cls, value: 'BrowserType | str') -> 'BrowserType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            choices = ', '.join(b.value for b in cls)
            raise UnsupportedBrowserError(f'unsupported browser type: {value} (choose from {choices})') from e


DEFAULT_DEBUG_PORTS = {
    BrowserType.EDGE: 9222,
    BrowserType.CHROME: 9223,
}

_WINDOWS_PATHS = {
    BrowserType.EDGE: [
        os.path.join(os.environ.get('PROGRAMFILES(X86)', ''), 'Microsoft', 'Edge', 'Application', 'msedge.exe'),
        os.path.join(os.environ.get('PROGRAMFILES', ''), 'Microsoft', 'Edge', 'Application', 'msedge.exe'),
        'C:/Program Files (x86)/Microsoft/Edge/Application/msedge.exe',
        'C:/Program Files/Microsoft/Edge/Application/msedge.exe',
    ],
    BrowserType.CHROME: [
        os.path.join(os.environ.get('PROGRAMFILES', ''), 'Google', 'Chrome', 'Application', 'chrome.exe'),
        os.path.join(os.environ.get('PROGRAMFILES(X86)', ''), 'Google', 'Chrome', 'Application', 'chrome.exe'),
        'C:/Program Files/Google/Chrome/Application/chrome.exe',
        'C:/Program Files (x86)/Google/Chrome/Application/chrome.exe',
    ],
}

_MACOS_PATHS = {
    BrowserType.EDGE: ['/Applications/Microsoft Edge.app/Contents/MacOS/Microsoft Edge'],
    BrowserType.CHROME: ['/Applications/Google Chrome.app/Contents/MacOS/Google Chrome'],
}

_EXECUTABLE_NAMES = {
    BrowserType.EDGE: ['msedge', 'microsoft-edge', 'microsoft-edge-stable'],
    BrowserType.CHROME: ['chrome', 'google-chrome', 'google-chrome-stable', 'chromium', 'chromium-browser'],
}


def find_browser_executable(browser_type: BrowserType) -> str:
    """
    Locate the browser executable for this OS.

    Falls back to the bare executable name so the launch can still try PATH.
    """
    if sys.platform == 'win32':
        candidates = _WINDOWS_PATHS[browser_type]
    elif sys.platform == 'darwin':
        candidates = _MACOS_PATHS[browser_type]
    else:
        candidates = []

    for candidate in candidates:
        if candidate and Path(candidate).is_file():
            return candidate

    for name in _EXECUTABLE_NAMES[browser_type]:
        found = shutil.which(name)
        if found:
            return found

    if sys.platform == 'win32':
        return 'msedge.exe' if browser_type == BrowserType.EDGE else 'chrome.exe'
    return _EXECUTABLE_NAMES[browser_type][-1]


def default_user_data_dir(browser_type: BrowserType) -> Path:
    """Profile directory reserved for the debug browser, separate from the everyday profile."""
    local_app_data = os.environ.get('LOCALAPPDATA')
    if sys.platform == 'win32' and local_app_data:
        if browser_type == BrowserType.EDGE:
            return Path(local_app_data) / 'Microsoft' / 'EdgeDebug'
        return Path(local_app_data) / 'Google' / 'ChromeDebug'
    return Path.home() / '.cache' / 'sso-fetch' / f'{browser_type.value}-debug'


@dataclass
class BrowserConfig:
    """Where the browser lives and how to reach its DevTools endpoint."""

    browser_type: BrowserType
    exe_path: str
    user_data_dir: Path
    debug_port: int

    @property
    def debug_url(self) -> str:
        return f'http://{DEBUG_HOST}:{self.debug_port}'

    def is_debug_port_open(self, timeout: float = LIVENESS_TIMEOUT_SECONDS) -> bool:
        """Check whether a browser is answering on the debug port."""
        try:
            response = requests.get(f'{self.debug_url}/json/version', timeout=timeout)
        except requests.RequestException:
            return False
        response.close()
        return response.status_code == 200

    def websocket_debugger_url(self) -> str:
        """Read the browser-level CDP WebSocket URL from /json/version."""
        try:
            response = requests.get(f'{self.debug_url}/json/version', timeout=5)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise BrowserLaunchError(f'failed to query {self.debug_url}/json/version: {e}') from e

        ws_url = data.get('webSocketDebuggerUrl') if isinstance(data, dict) else None
        if not ws_url:
            raise BrowserLaunchError('webSocketDebuggerUrl not found in /json/version response')
        return ws_url

    def launch_args(self) -> list[str]:
        return [
            self.exe_path,
            f'--remote-debugging-port={self.debug_port}',
            f'--user-data-dir={self.user_data_dir}',
            '--remote-allow-origins=*',
            '--no-first-run',
            '--no-default-browser-check',
        ]


def get_browser_config(browser_type: BrowserType | str) -> BrowserConfig:
    """
    Resolve the config for a browser type.

    SSO_FETCH_BROWSER_PATH, SSO_FETCH_DEBUG_PORT and SSO_FETCH_PROFILE_DIR
    override the discovered values.
    """
    browser_type = BrowserType.parse(browser_type)

    exe_path = os.environ.get('SSO_FETCH_BROWSER_PATH') or find_browser_executable(browser_type)
    profile_dir = os.environ.get('SSO_FETCH_PROFILE_DIR')
    user_data_dir = Path(profile_dir).expanduser() if profile_dir else default_user_data_dir(browser_type)

    port_override = os.environ.get('SSO_FETCH_DEBUG_PORT')
    try:
        debug_port = int(port_override) if port_override else DEFAULT_DEBUG_PORTS[browser_type]
    except ValueError as e:
        raise ValueError(f'SSO_FETCH_DEBUG_PORT must be an integer, got {port_override!r}') from e

    return BrowserConfig(
        browser_type=browser_type,
        exe_path=exe_path,
        user_data_dir=user_data_dir,
        debug_port=debug_port,
    )


def launch_browser(config: BrowserConfig) -> subprocess.Popen:
    """Start the browser with remote debugging enabled."""
    try:
        return subprocess.Popen(
            config.launch_args(),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as e:
        raise BrowserLaunchError(f'failed to launch browser {config.exe_path}: {e}') from e


def wait_for_debug_port(
    config: BrowserConfig,
    attempts: int = LAUNCH_POLL_ATTEMPTS,
    interval: float = LAUNCH_POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll the debug port until it answers or the attempts run out."""
    for _ in range(attempts):
        sleep(interval)
        if config.is_debug_port_open():
            return True
    return False


# ---------------------------------------------------------------------------
# Login completion detection
# ---------------------------------------------------------------------------

class CompletionSignal:
    """
    Single-delivery completion slot shared by the racing detectors.

    The first offer wins; later offers are refused.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._source: str | None = None

    def offer(self, source: str) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._source = source
            self._event.set()
            return True

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def source(self) -> str | None:
        return self._source

    def wait(self, timeout: float | None = None) -> str | None:
        """Block until a detector fires. Returns its name, or None on timeout."""
        if self._event.wait(timeout):
            return self._source
        return None


class StabilityDetector:
    """
    Declares login complete once the page URL has stopped changing.

    The URL must stay identical for `threshold` seconds, be on the original
    host, and not be one of `excluded_paths`.
    """

    def __init__(
        self,
        target_host: str,
        threshold: float = STABILITY_THRESHOLD_SECONDS,
        interval: float = URL_POLL_INTERVAL_SECONDS,
        excluded_paths: tuple[str, ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.target_host = target_host.lower()
        self.threshold = threshold
        self.interval = interval
        self.excluded_paths = tuple(excluded_paths)
        self.clock = clock

    def is_settled_url(self, url: str) -> bool:
        try:
            host = url_host(url)
        except InvalidURLError:
            # about:blank, chrome-error:// and the like
            return False
        return host == self.target_host and urlsplit(url).path not in self.excluded_paths

    def run(
        self,
        url_source: Callable[[], str],
        sleep: Callable[[float], None],
        signal: CompletionSignal,
        cancel: threading.Event,
        deadline: float | None = None,
    ) -> None:
        last_url = None
        stable_since = self.clock()

        while not cancel.is_set() and not signal.is_set():
            if deadline is not None and self.clock() >= deadline:
                return
            try:
                sleep(self.interval)
                current_url = url_source()
            except PageUnavailableError:
                # Leave completion to the manual override
                return

            if cancel.is_set():
                return

            if current_url != last_url:
                last_url = current_url
                stable_since = self.clock()
                continue

            if self.is_settled_url(current_url) and self.clock() - stable_since >= self.threshold:
                signal.offer(STABLE)
                return


class ManualOverrideDetector:
    """
    Declares login complete when the user presses Enter.

    Input is polled in short slices so the detector notices cancellation
    promptly. End of input ends the detector without completing.
    """

    def __init__(self, stream: TextIO | None = None, poll_interval: float = MANUAL_POLL_INTERVAL_SECONDS):
        self.stream = stream
        self.poll_interval = poll_interval

    def _stream(self) -> TextIO:
        return self.stream if self.stream is not None else sys.stdin

    def _poll_console(self, timeout: float) -> str | None:
        import msvcrt

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if msvcrt.kbhit() and msvcrt.getwch() in ('\r', '\n'):
                return 'line'
            time.sleep(0.05)
        return None

    def _poll(self, timeout: float) -> str | None:
        stream = self._stream()
        if os.name == 'nt' and stream is sys.stdin and stream.isatty():
            return self._poll_console(timeout)

        ready, _, _ = select.select([stream], [], [], timeout)
        if not ready:
            return None
        return 'line' if stream.readline() else 'eof'

    def run(self, signal: CompletionSignal, cancel: threading.Event) -> None:
        while not cancel.is_set() and not signal.is_set():
            try:
                outcome = self._poll(self.poll_interval)
            except (OSError, ValueError):
                # stdin closed or not pollable; stability detection still runs
                return

            if outcome == 'eof':
                return
            if outcome == 'line':
                signal.offer(MANUAL)
                return


class LoginWatcher:
    """Races the stability and manual detectors and returns the winner's name."""

    def __init__(
        self,
        stability: StabilityDetector,
        manual: ManualOverrideDetector,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stability = stability
        self.manual = manual
        self.timeout = timeout
        self.clock = clock

    def wait(self, url_source: Callable[[], str], sleep: Callable[[float], None]) -> str:
        """
        Block until login is judged complete.

        The stability detector runs on the calling thread because it reads
        from the browser connection; the manual detector runs on a worker.
        """
        signal = CompletionSignal()
        cancel = threading.Event()
        deadline = self.clock() + self.timeout if self.timeout else None

        worker = threading.Thread(
            target=self.manual.run,
            args=(signal, cancel),
            name='login-manual-override',
            daemon=True,
        )
        worker.start()

        try:
            self.stability.run(url_source, sleep, signal, cancel, deadline)
            # The page may have gone away; the manual override can still finish
            while not signal.is_set() and worker.is_alive():
                if deadline is not None and self.clock() >= deadline:
                    break
                signal.wait(self.manual.poll_interval)
        finally:
            cancel.set()
            worker.join(timeout=self.manual.poll_interval * 5)

        if signal.is_set():
            return signal.source
        if deadline is not None and self.clock() >= deadline:
            raise LoginTimeoutError(f'login was not completed within {self.timeout:g} seconds')
        raise LoginFailedError('login page closed before login completed')


# ---------------------------------------------------------------------------
# Browser driver
# ---------------------------------------------------------------------------

@dataclass
class AuthResult:
    """Everything captured from the browser after a login."""

    cookies: list[Cookie] = field(default_factory=list)
    local_storage: dict[str, str] = field(default_factory=dict)


def cookie_from_cdp(raw: dict) -> Cookie:
    """Convert a Storage.getCookies record into a Cookie."""
    # Newer Chromium builds report partitionKey as an object; it is not needed here
    return Cookie.from_dict({
        'name': raw.get('name'),
        'value': raw.get('value', ''),
        'domain': raw.get('domain', ''),
        'path': raw.get('path', '/'),
        'expires': raw.get('expires'),
        'secure': raw.get('secure', False),
        'httpOnly': raw.get('httpOnly', False),
        'sameSite': raw.get('sameSite'),
    })


class BrowserAuth:
    """Runs interactive SSO logins in a debug-enabled browser and captures the result."""

    def __init__(
        self,
        store: SessionCache | None = None,
        browser_type: BrowserType | str = BrowserType.EDGE,
        *,
        config: BrowserConfig | None = None,
        verbose: bool = True,
        stealth: bool = False,
        close_launched_browser: bool = False,
        login_timeout: float | None = None,
        stability_threshold: float = STABILITY_THRESHOLD_SECONDS,
        landing_paths: tuple[str, ...] = DEFAULT_LANDING_PATHS,
        input_stream: TextIO | None = None,
        playwright_factory: Callable = sync_playwright,
    ):
        self.store = store if store is not None else SessionCache(verbose=verbose)
        self.browser_type = BrowserType.parse(config.browser_type if config else browser_type)
        self.config = config
        self.verbose = verbose
        self.stealth = stealth
        self.close_launched_browser = close_launched_browser
        self.login_timeout = login_timeout
        self.stability_threshold = stability_threshold
        self.landing_paths = tuple(landing_paths)
        self.input_stream = input_stream
        self._playwright_factory = playwright_factory

    def _log(self, message: str):
        if self.verbose:
            print(message, file=sys.stderr)

    def _resolve_config(self) -> BrowserConfig:
        return self.config if self.config is not None else get_browser_config(self.browser_type)

    # ── Public API ────────────────────────────────────────────────

    def authenticate(self, url: str) -> list[Cookie]:
        """
        Open url in the browser, wait for the login to finish, and cache the cookies.

        Raises LoginFailedError if the browser ends up with no cookies at all.
        """
        host = url_host(url)
        config = self._resolve_config()

        self._log(f'Opening browser to: {url}')
        self._log('Complete the login flow in the browser (press Enter here when done)...')

        with self._open_page(config, url) as (browser, page):
            self._wait_for_login(page, host, excluded_paths=())
            self._log('Login completed. Capturing cookies...')
            cookies = self.extract_cookies(browser)

        if not cookies:
            raise LoginFailedError('no cookies captured - login may have failed')

        self._log(f'  Captured {len(cookies)} cookies')
        self.store.save(host, cookies)
        self._log(f'  Session saved for host: {host}')
        return cookies

    def authenticate_and_capture(self, url: str) -> AuthResult:
        """
        Run the login flow and return cookies plus localStorage without caching anything.

        Completion additionally requires the page to have left the SPA landing route.
        """
        host = url_host(url)
        config = self._resolve_config()

        self._log(f'Opening browser to: {url}')
        self._log('Complete the login flow in the browser (press Enter here when done)...')

        with self._open_page(config, url) as (browser, page):
            self._wait_for_login(page, host, excluded_paths=self.landing_paths)
            self._log('Login completed. Capturing credentials...')

            cookies = self.extract_cookies(browser)
            self._log(f'  Captured {len(cookies)} cookies')

            if not page.is_closed():
                self._log(f'  Reading localStorage from: {page.url}')
            local_storage = self.extract_local_storage(page)
            if local_storage:
                self._log(f'  Captured {len(local_storage)} localStorage entries')
            else:
                self._log_open_pages(browser)

        return AuthResult(cookies=cookies, local_storage=local_storage)

    def inspect(self, url: str, wait_seconds: float = 5.0) -> dict:
        """Load url and report its title, buttons, links and HTML, for working out a site's login flow."""
        url_host(url)
        config = self._resolve_config()

        with self._open_page(config, url) as (_browser, page):
            self._log(f'Waiting {wait_seconds:g} seconds for page to load...')
            try:
                page.wait_for_timeout(wait_seconds * 1000)
                return {
                    'url': page.url,
                    'title': page.title(),
                    'buttons': page.eval_on_selector_all(
                        'button',
                        """els => els.map(e => ({
                            text: (e.innerText || '').trim(),
                            id: e.id || '',
                            class: e.getAttribute('class') || '',
                        }))""",
                    ),
                    'links': page.eval_on_selector_all(
                        'a',
                        """els => els.map(e => ({
                            text: (e.innerText || '').trim(),
                            href: e.getAttribute('href') || '',
                        }))""",
                    ),
                    'html': page.content(),
                }
            except PlaywrightError as e:
                raise AuthError(f'failed to inspect page: {e}') from e

    # ── Extraction ────────────────────────────────────────────────

    def extract_cookies(self, browser: Browser) -> list[Cookie]:
        """Read every cookie in the browser's jar via CDP, not just the page's."""
        try:
            session = browser.new_browser_cdp_session()
            try:
                result = session.send('Storage.getCookies')
            finally:
                session.detach()
        except PlaywrightError as e:
            raise AuthError(f'failed to get cookies from browser: {e}') from e

        try:
            return [cookie_from_cdp(raw) for raw in result.get('cookies', [])]
        except (TypeError, ValueError) as e:
            raise AuthError(f'failed to parse cookies response: {e}') from e

    def extract_local_storage(self, page: Page) -> dict[str, str]:
        """Read the page's localStorage. Failures are reported and yield an empty map."""
        try:
            return parse_local_storage_json(page.evaluate(LOCAL_STORAGE_JS))
        except (PlaywrightError, TypeError, ValueError) as e:
            # Not every site uses localStorage
            self._log(f'  Warning: could not read localStorage: {e}')
            return {}

    def _log_open_pages(self, browser: Browser):
        pages = [p for context in browser.contexts for p in context.pages]
        self._log(f'  Browser has {len(pages)} pages:')
        for i, p in enumerate(pages):
            self._log(f'    [{i}] {p.url}')

    # ── Browser lifecycle ─────────────────────────────────────────

    def _connect_or_launch(self, playwright: Playwright, config: BrowserConfig) -> tuple[Browser, bool]:
        """
        Attach to a browser already listening on the debug port, or start one.

        Returns the browser and whether this call launched it.
        """
        if config.is_debug_port_open():
            self._log(f'Connecting to existing {config.browser_type.value} browser on port {config.debug_port}...')
            return self._connect(playwright, config), False

        self._log(f'Launching {config.browser_type.value} with debug port {config.debug_port}...')
        process = launch_browser(config)

        if not wait_for_debug_port(config):
            process.terminate()
            timeout = LAUNCH_POLL_ATTEMPTS * LAUNCH_POLL_INTERVAL_SECONDS
            raise BrowserLaunchError(f'browser debug port did not open after {timeout:g} seconds')

        return self._connect(playwright, config), True

    def _connect(self, playwright: Playwright, config: BrowserConfig) -> Browser:
        ws_url = config.websocket_debugger_url()
        try:
            return playwright.chromium.connect_over_cdp(ws_url)
        except PlaywrightError as e:
            raise BrowserLaunchError(f'failed to connect to browser at {ws_url}: {e}') from e

    def _close_browser(self, browser: Browser):
        try:
            browser.new_browser_cdp_session().send('Browser.close')
        except PlaywrightError as e:
            # The connection drops as the browser exits
            self._log(f'  Browser closed ({e.message})')

    @contextmanager
    def _open_page(self, config: BrowserConfig, url: str):
        """Yield (browser, page) with a fresh tab navigated to url, cleaning up afterwards."""
        try:
            playwright = self._playwright_factory().start()
        except PlaywrightError as e:
            raise AuthError(f'failed to start Playwright: {e}') from e

        browser = None
        page = None
        launched = False
        try:
            browser, launched = self._connect_or_launch(playwright, config)
            try:
                context = browser.contexts[0] if browser.contexts else browser.new_context()
                page = context.new_page()

                if self.stealth:
                    self._log('  Applying stealth mode...')
                    Stealth().apply_stealth_sync(page)
            except PlaywrightError as e:
                raise AuthError(f'failed to open a browser tab: {e}') from e

            try:
                page.goto(url, wait_until='commit')
            except PlaywrightError as e:
                raise AuthError(f'failed to open {url}: {e}') from e

            yield browser, page
        finally:
            if page is not None and not page.is_closed():
                try:
                    page.close()
                except PlaywrightError as e:
                    self._log(f'  Warning: could not close login tab: {e.message}')
            if browser is not None and launched and self.close_launched_browser:
                self._close_browser(browser)
            # Disconnects without closing a browser we attached to
            playwright.stop()

    def _wait_for_login(self, page: Page, host: str, excluded_paths: tuple[str, ...]) -> str:
        def url_source() -> str:
            if page.is_closed():
                raise PageUnavailableError('login page was closed')
            return page.url

        def sleep(seconds: float):
            # Pumps Playwright events so page.url stays current
            try:
                page.wait_for_timeout(seconds * 1000)
            except PlaywrightError as e:
                raise PageUnavailableError(str(e)) from e

        watcher = LoginWatcher(
            StabilityDetector(host, threshold=self.stability_threshold, excluded_paths=excluded_paths),
            ManualOverrideDetector(self.input_stream),
            timeout=self.login_timeout,
        )
        source = watcher.wait(url_source, sleep)
        self._log(f'  Login judged complete ({source})')
        return source
