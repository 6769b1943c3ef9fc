"""Shared fakes: a scripted oracle and a browser session replaying recorded pages."""
from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

import pytest
import structlog

from testsmith.core.exceptions import (
    AssertionFailedError,
    ElementNotFoundError,
    NetworkError,
    StepTimeoutError,
)
from testsmith.core.schemas import (
    ElementCandidate,
    Message,
    OracleResponse,
    PageObservation,
    ToolCall,
    ToolSchema,
)
from testsmith.core.selectors import resolve_selector

Scripted = Union[OracleResponse, Exception]


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Keep a test's configure_logging() from binding later tests to its closed capture stream."""
    yield
    structlog.reset_defaults()


class FakeOracle:
    """Returns scripted responses in order, or asks ``responder`` for each one."""

    name = "fake"

    def __init__(
        self,
        responses: Optional[List[Scripted]] = None,
        responder: Optional[Callable[[List[Message], Optional[List[ToolSchema]]], Scripted]] = None,
    ) -> None:
        self.responses = list(responses or [])
        self.responder = responder
        self.calls: List[dict] = []

    async def generate(self, messages, tools=None) -> OracleResponse:
        self.calls.append({"messages": list(messages), "tools": tools})
        if self.responder is not None:
            result = self.responder(messages, tools)
        elif self.responses:
            result = self.responses.pop(0)
        else:
            result = OracleResponse(text="")
        if isinstance(result, Exception):
            raise result
        return result


class AlwaysCallingOracle(FakeOracle):
    """Requests ``per_turn`` tool calls on every turn and never finishes on its own."""

    def __init__(self, tool: str = "echo", per_turn: int = 1) -> None:
        super().__init__()
        self.tool = tool
        self.per_turn = per_turn
        self.counter = 0
        self.responder = self._respond

    def _respond(self, messages, tools):
        calls = []
        for _ in range(self.per_turn):
            self.counter += 1
            calls.append(ToolCall(id=f"call_{self.counter}", name=self.tool, arguments={"text": str(self.counter)}))
        return OracleResponse(text="", tool_calls=calls)


@dataclass
class RecordedPage:
    """
    A page the fake session can show.

    Attributes:
        observation: What extract_interactive_elements returns on this page
        texts: Extra locator -> text pairs present on the page
        links: Locator -> path the page switches to when the locator is clicked
    """
    observation: PageObservation
    texts: Dict[str, str] = field(default_factory=dict)
    links: Dict[str, str] = field(default_factory=dict)

    def locators(self) -> Dict[str, str]:
        found = {resolve_selector(e).locator: e.text for e in self.observation.elements}
        found.update(self.texts)
        found.setdefault("body", "")
        return found


class RecordedSession:
    """In-memory BrowserSession over a fixed set of recorded pages."""

    def __init__(self, pages: Dict[str, RecordedPage], base_url: str = "http://app.test") -> None:
        self.pages = pages
        self.base_url = base_url
        self.path: Optional[str] = None
        self.actions: List[tuple] = []
        self.typed: Dict[str, str] = {}
        self.screenshots: List[str] = []

    @property
    def page(self) -> RecordedPage:
        if self.path is None:
            raise NetworkError("No page loaded")
        return self.pages[self.path]

    async def navigate(self, url: str) -> None:
        self.actions.append(("navigate", url))
        path = urlparse(url).path or "/"
        if path not in self.pages:
            raise NetworkError(f"404 for {url}", "navigate", url)
        self.path = path

    def _require(self, locator: str, action: str) -> str:
        locators = self.page.locators()
        if locator not in locators:
            raise ElementNotFoundError(locator, action)
        return locators[locator]

    async def click(self, locator: str) -> None:
        self.actions.append(("click", locator))
        self._require(locator, "click")
        if locator in self.page.links:
            self.path = self.page.links[locator]

    async def type(self, locator: str, text: str) -> None:
        self.actions.append(("type", locator, text))
        self._require(locator, "type")
        self.typed[locator] = text

    async def wait_for(self, target) -> None:
        self.actions.append(("wait", target))
        if isinstance(target, str) and target not in self.page.locators():
            raise StepTimeoutError(f"Timed out waiting for {target}", "wait", target)

    async def extract_interactive_elements(self) -> PageObservation:
        observation = copy.deepcopy(self.page.observation)
        observation.url = await self.current_url()
        return observation

    async def screenshot(self, name: str) -> Optional[str]:
        path = f"{name}.png"
        self.screenshots.append(path)
        return path

    async def current_url(self) -> str:
        return self.base_url + (self.path or "")

    async def title(self) -> str:
        return self.page.observation.title

    async def is_present(self, locator: str) -> bool:
        return locator in self.page.locators()

    async def text_of(self, locator: str) -> str:
        try:
            return self._require(locator, "assert")
        except ElementNotFoundError as e:
            raise AssertionFailedError(str(e), "assert", locator) from e


def session_factory(session):
    @asynccontextmanager
    async def _factory():
        yield session

    return _factory


def element(tag: str, text: str = "", index: int = 1, **attributes: str) -> ElementCandidate:
    attrs = {k.rstrip("_").replace("_", "-"): v for k, v in attributes.items()}
    return ElementCandidate(tag=tag, attributes=attrs, text=text, index=index)


@pytest.fixture
def login_app() -> Dict[str, RecordedPage]:
    """A login page whose submit button is ``#login-btn`` and a dashboard behind it."""
    login = RecordedPage(
        observation=PageObservation(
            title="Sign in",
            elements=[
                element("input", id="username", name="username", type="text"),
                element("input", id="password", name="password", type="password"),
                element("button", "Sign in", id="login-btn", type="submit"),
            ],
        ),
        links={"#login-btn": "/dashboard"},
    )
    dashboard = RecordedPage(
        observation=PageObservation(
            title="Dashboard",
            elements=[
                element("a", "Profile", href="/profile", data_testid="profile-link"),
                element("button", "Log out", class_="logout"),
            ],
        ),
        texts={".welcome": "Welcome back, demo"},
    )
    return {"/login": login, "/dashboard": dashboard}
