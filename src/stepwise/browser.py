# browser.py
from __future__ import annotations

import functools
import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, TypeVar

from playwright.sync_api import Browser, BrowserContext, Page, Playwright, Route, sync_playwright

from .runner import BROWSERS_KEY

if TYPE_CHECKING:
    from .run_instance import RunInstance

logger = logging.getLogger(__name__)

DEFAULT_WIDTH = 1024
DEFAULT_HEIGHT = 768

# name -> (playwright browser type, channel)
BROWSER_NAMES: Dict[str, Tuple[str, Optional[str]]] = {
    "chromium": ("chromium", None),
    "chrome": ("chromium", "chrome"),
    "edge": ("chromium", "msedge"),
    "firefox": ("firefox", None),
    "webkit": ("webkit", None),
    "safari": ("webkit", None),
}

F = TypeVar("F", bound=Callable[..., Any])


def _owned(method: F) -> F:
    """Run the decorated method on the owning RunInstance's thread, whoever calls it."""

    @functools.wraps(method)
    def wrapper(self: "BrowserInstance", *args: Any, **kwargs: Any) -> Any:
        return self.run_instance.call_on_owner(method, self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


def _driver(run_instance: "RunInstance") -> Playwright:
    """The owner thread's playwright, started by its first session and stopped by RunInstance.shutdown()."""
    if run_instance.playwright is None:
        run_instance.playwright = sync_playwright().start()
    return run_instance.playwright


class BrowserInstance:
    """
    One browser session, owned by the RunInstance that opened it.

    The playwright sync API is bound to the thread that started it, so every
    call is carried out on the owner's thread and all sessions of one
    RunInstance share its driver.

    Every instance is also listed in the runner's persistent registry so that
    Runner.stop() can close whatever is still open.
    """

    def __init__(self, run_instance: "RunInstance"):
        self.run_instance = run_instance
        self.runner = run_instance.runner

        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

        self._mocked_routes: List[str] = []
        self._time_mocked = False

    @classmethod
    def create(cls, run_instance: "RunInstance") -> "BrowserInstance":
        """New session registered with the runner and set as the branch's {browser}."""
        instance = cls(run_instance)
        run_instance.runner.append_persistent(BROWSERS_KEY, instance)
        run_instance.g("browser", instance)
        return instance

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @_owned
    def open(
        self,
        name: str = "chromium",
        width: int = DEFAULT_WIDTH,
        height: int = DEFAULT_HEIGHT,
        headless: bool | None = None,
        server_url: str | None = None,
    ) -> None:
        """
        Launch (or connect to, when server_url is set) a browser and open one page.

        headless defaults to what the runner decides; server_url to the configured remote endpoint.
        """
        key = name.strip().lower()
        if key not in BROWSER_NAMES:
            raise ValueError(f"Unknown browser {name!r}, expected one of {sorted(BROWSER_NAMES)}")
        type_name, channel = BROWSER_NAMES[key]

        if headless is None:
            headless = self.runner.is_headless()
        if server_url is None:
            server_url = self.runner.config.selenium_server

        browser_type = getattr(_driver(self.run_instance), type_name)

        if server_url:
            self.browser = browser_type.connect(server_url)
        else:
            launch_kwargs: Dict[str, Any] = {"headless": headless}
            if channel:
                launch_kwargs["channel"] = channel
            self.browser = browser_type.launch(**launch_kwargs)

        self.context = self.browser.new_context(viewport={"width": width, "height": height})
        self.page = self.context.new_page()
        logger.debug("opened %s (headless=%s, remote=%s)", key, headless, bool(server_url))

    def close(self) -> None:
        """Close the browser; the driver stays up for the owner's other sessions. Closing twice is a no-op."""
        if self.browser is None:
            return
        self.run_instance.call_on_owner(self._close)

    def _close(self) -> None:
        browser = self.browser
        self.browser = self.context = self.page = None
        if browser is not None:
            browser.close()

    def _require_page(self) -> Page:
        if self.page is None:
            raise RuntimeError("Browser is not open")
        return self.page

    # ------------------------------------------------------------------
    # Page interaction
    # ------------------------------------------------------------------

    @_owned
    def navigate(self, url: str) -> None:
        self._require_page().goto(url)

    @_owned
    def execute_script(self, script: str, *args: Any) -> Any:
        """Run a function body in the page; args are available as arguments[0..n]."""
        wrapper = f"(args) => (function() {{ {script} }}).apply(null, args)"
        return self._require_page().evaluate(wrapper, list(args))

    @_owned
    def execute_async_script(self, script: str, *args: Any) -> Any:
        """Like execute_script, but the last argument is a callback that resolves the result."""
        wrapper = (
            "(args) => new Promise((resolve) => "
            f"(function() {{ {script} }}).apply(null, args.concat([resolve])))"
        )
        return self._require_page().evaluate(wrapper, list(args))

    @_owned
    def take_screenshot(self, is_after: bool) -> bytes:
        """PNG of the current viewport. is_after tells the before/after shot of a step apart."""
        return self._require_page().screenshot(type="png")

    # ------------------------------------------------------------------
    # Mocks
    # ------------------------------------------------------------------

    @_owned
    def mock_time(self, when: Any) -> None:
        """Freeze the page's clock at when (epoch milliseconds, ISO string or datetime)."""
        if isinstance(when, str):
            when = int(when) if when.strip().isdigit() else datetime.fromisoformat(when.strip())
        self._require_page().clock.set_fixed_time(when)
        self._time_mocked = True

    @_owned
    def mock_http(self, method: str, url: str, body: Any = "", status: int = 200) -> None:
        """Answer matching requests with a canned response. method "*" matches any method."""
        wanted = method.upper()
        payload = body if isinstance(body, str) else json.dumps(body)

        def handler(route: Route) -> None:
            if wanted in ("*", route.request.method.upper()):
                route.fulfill(status=status, body=payload)
            else:
                route.fallback()

        self._require_page().route(url, handler)
        self._mocked_routes.append(url)

    @_owned
    def mock_time_stop(self) -> None:
        if not self._time_mocked:
            return
        page = self._require_page()
        page.clock.set_system_time(datetime.now())
        page.clock.resume()
        self._time_mocked = False

    @_owned
    def mock_http_stop(self) -> None:
        page = self._require_page()
        for url in self._mocked_routes:
            page.unroute(url)
        self._mocked_routes = []

    def mock_stop(self) -> None:
        self.mock_time_stop()
        self.mock_http_stop()
