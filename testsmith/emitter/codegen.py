"""Render a validated Plan into a Playwright Test project."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Set
from urllib.parse import urlparse

from jinja2 import Environment, PackageLoader, StrictUndefined

from testsmith.agents.executor import parse_wait_target
from testsmith.core.logging import get_logger
from testsmith.core.schemas import Plan, Scenario, Step

log = get_logger("emitter")

UNVALIDATED_TAG = "@unvalidated"
SPEC_FILE = "tests/ui-tests.spec.js"
PLAYWRIGHT_VERSION = "^1.47.0"

_QUOTED = re.compile(r"""=\s*["']([^"']+)["']""")
_HAS_TEXT = re.compile(r""":has-text\(\s*["']([^"']+)["']\s*\)""")
_ID = re.compile(r"#([A-Za-z_][\w-]*)")
_CLASS = re.compile(r"\.([A-Za-z_][\w-]*)")
_TAG = re.compile(r"^([a-z][a-z0-9]*)")


def js_string(value: Optional[str]) -> str:
    """JSON string literals are valid JavaScript string literals."""
    return json.dumps(value if value is not None else "", ensure_ascii=False)


def _words(value: str) -> List[str]:
    value = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", value)
    return re.findall(r"[A-Za-z0-9]+", value)


def _pascal(words: List[str]) -> str:
    return "".join(w[:1].upper() + w[1:].lower() for w in words)


def page_path(target: str) -> str:
    """Path part of a navigate target; absolute URLs are reduced to their path."""
    parsed = urlparse(target or "/")
    path = parsed.path if parsed.scheme else (target or "/").split("?")[0].split("#")[0]
    if not path.startswith("/"):
        path = "/" + path
    return path.rstrip("/") or "/"


def page_class_name(path: str) -> str:
    """``/`` -> ``HomePage``, ``/user/profile`` -> ``UserProfilePage``."""
    words = _words(page_path(path))
    if not words:
        return "HomePage"
    name = _pascal(words)
    if name[0].isdigit():
        name = "Route" + name
    return name if name.endswith("Page") else name + "Page"


def locator_role(locator: str, action: str = "") -> str:
    """Logical name for a locator used by a step, e.g. ``input[name="email"]`` -> ``emailInput``."""
    source = ""
    for pattern in (_QUOTED, _HAS_TEXT, _ID, _CLASS):
        found = pattern.findall(locator)
        if found:
            source = found[-1]
            break
    tag_match = _TAG.match(locator.strip())
    tag = tag_match.group(1) if tag_match else ""
    suffix = {"input": "Input", "textarea": "Input", "button": "Button", "a": "Link", "select": "Select"}.get(tag)
    if suffix is None:
        suffix = "Input" if action == "type" else "Element"
    words = _words(source)[:4] or _words(tag) or ["element"]
    base = words[0].lower() + _pascal(words[1:])
    if base[0].isdigit():
        base = "el" + base
    return base if base.lower().endswith(suffix.lower()) else base + suffix


@dataclass
class PageObject:
    """
    One emitted page object: the selectors used by the scenarios that start on ``path``.

    Attributes:
        path: Page path relative to the base URL
        class_name: JavaScript class name
        selectors: Role name -> locator, in first-use order
    """
    path: str
    class_name: str
    selectors: Dict[str, str] = field(default_factory=dict)

    @property
    def var_name(self) -> str:
        return self.class_name[:1].lower() + self.class_name[1:]

    @property
    def file_name(self) -> str:
        return f"{self.class_name}.js"

    def role_for(self, locator: str, action: str = "") -> str:
        for role, known in self.selectors.items():
            if known == locator:
                return role
        base = locator_role(locator, action)
        role, n = base, 2
        while role in self.selectors:
            role, n = f"{base}{n}", n + 1
        self.selectors[role] = locator
        return role


def group_page_objects(plan: Plan, known: Optional[Mapping[str, str]] = None) -> Dict[str, PageObject]:
    """
    Group scenarios by the page they start on.

    Role names already present in ``known`` (the validated SelectorMap) are
    reused for matching locators.
    """
    reverse = {locator: role for role, locator in sorted((known or {}).items())}
    pages: Dict[str, PageObject] = {}
    taken: Set[str] = set()
    for scenario in plan.scenarios:
        path = page_path(scenario.start_page())
        page = pages.get(path)
        if page is None:
            # "/user-profile" and "/user/profile" both read as UserProfilePage
            base = name = page_class_name(path)
            n = 2
            while name in taken:
                name, n = f"{base}{n}", n + 1
            taken.add(name)
            page = pages[path] = PageObject(path=path, class_name=name)
        for step in scenario.steps:
            if step.action in ("click", "type") or (step.action == "wait" and isinstance(parse_wait_target(step.target), str)):
                locator = step.target or ""
            elif step.action == "assert" and (step.target or "").lower() not in ("url", "title", ""):
                locator = step.target or ""
            else:
                continue
            role = reverse.get(locator)
            if role and role not in page.selectors:
                page.selectors[role] = locator
            else:
                page.role_for(locator, step.action)
    return pages


def _regex_literal(value: str) -> str:
    return "new RegExp(" + js_string(re.escape(value)) + ")"


def render_step(step: Step, page: PageObject) -> str:
    """One Playwright statement for ``step``; ``page`` supplies role names."""
    po = page.var_name
    target = step.target or ""
    if step.action == "navigate":
        if page_path(target) == page.path:
            return f"await {po}.navigate();"
        return f"await page.goto({js_string(target)});"
    if step.action == "click":
        return f"await {po}.click({js_string(page.role_for(target, 'click'))});"
    if step.action == "type":
        return f"await {po}.fill({js_string(page.role_for(target, 'type'))}, {js_string(step.value)});"
    if step.action == "wait":
        wait = parse_wait_target(target or step.value)
        if wait is None:
            return "await page.waitForLoadState('load');"
        if isinstance(wait, int):
            return f"await page.waitForTimeout({wait});"
        return f"await {po}.waitFor({js_string(page.role_for(wait, 'wait'))});"
    if step.action == "assert":
        kind = target.lower()
        if kind == "url":
            return f"await expect(page).toHaveURL({_regex_literal(step.value or '')});"
        if kind == "title":
            return f"await expect(page).toHaveTitle({_regex_literal(step.value or '')});"
        locator = f"{po}.locator({js_string(page.role_for(target, 'assert'))})"
        if step.value:
            return f"await expect({locator}).toContainText({js_string(step.value)});"
        return f"await expect({locator}).toBeVisible();"
    return f"// unsupported action: {step.action}"


@dataclass
class EmittedTest:
    title: str
    page: PageObject
    body: List[str]
    comments: List[str]


def _test_title(scenario: Scenario) -> str:
    return scenario.name if scenario.validated else f"{scenario.name} {UNVALIDATED_TAG}"


class CodeEmitter:
    """
    Writes the test project for a validated plan.

    Output layout (under ``output_dir``)::

        tests/ui-tests.spec.js   one test per scenario, unvalidated ones tagged
        pages/<Name>Page.js      page objects, one per start page
        selectors.json           flat role -> locator map
        playwright.config.js     baseURL and reporter
        package.json             test, test:headed, test:report scripts
    """

    def __init__(self, output_dir: Path, headless: bool = True) -> None:
        self.output_dir = Path(output_dir)
        self.headless = headless
        self.env = Environment(
            loader=PackageLoader("testsmith.emitter", "templates"),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["js"] = js_string

    def build_tests(self, plan: Plan, pages: Dict[str, PageObject]) -> List[EmittedTest]:
        tests = []
        for scenario in plan.scenarios:
            page = pages[page_path(scenario.start_page())]
            body = [render_step(step, page) for step in scenario.steps]
            if not scenario.steps or scenario.steps[0].action != "navigate":
                body.insert(0, f"await {page.var_name}.navigate();")
            comments = [scenario.description] if scenario.description else []
            comments += [f"Expected: {r}" for r in scenario.expected_results]
            if not scenario.validated and scenario.errors:
                comments.append(f"Last validation error: {scenario.errors[-1]}")
            tests.append(EmittedTest(_test_title(scenario), page, body, comments))
        return tests

    def emit(self, plan: Plan, selectors: Optional[Mapping[str, str]] = None) -> List[Path]:
        """
        Render every file of the test project.

        Args:
            plan: Validated plan; unvalidated scenarios are emitted with an ``@unvalidated`` tag
            selectors: Plan-wide role -> locator map written to ``selectors.json``

        Returns:
            Paths of the written files
        """
        selectors = dict(selectors or {})
        pages = group_page_objects(plan, selectors)
        tests = self.build_tests(plan, pages)
        written: List[Path] = []

        for page in pages.values():
            written.append(self._write(f"pages/{page.file_name}", self.env.get_template("page.js.j2").render(page=page)))

        spec = self.env.get_template("spec.js.j2").render(
            requirement=plan.requirement or "Generated UI tests",
            pages=list(pages.values()),
            tests=tests,
        )
        written.append(self._write(SPEC_FILE, spec))

        all_selectors = dict(selectors)
        for page in pages.values():
            for role, locator in page.selectors.items():
                all_selectors.setdefault(role, locator)
        written.append(self._write("selectors.json", json.dumps(dict(sorted(all_selectors.items())), indent=2) + "\n"))

        config = self.env.get_template("playwright.config.js.j2").render(
            base_url=plan.base_url, headless=self.headless
        )
        written.append(self._write("playwright.config.js", config))
        written.append(self._write("package.json", json.dumps(self.package_manifest(), indent=2) + "\n"))

        log.info(
            "tests_emitted",
            output=str(self.output_dir),
            scenarios=len(tests),
            unvalidated=sum(1 for s in plan.scenarios if not s.validated),
            pages=len(pages),
        )
        return written

    @staticmethod
    def package_manifest() -> Dict[str, object]:
        return {
            "name": "generated-ui-tests",
            "version": "1.0.0",
            "private": True,
            "description": "UI tests generated by testsmith",
            "scripts": {
                "test": "playwright test",
                "test:headed": "playwright test --headed",
                "test:report": "playwright show-report",
            },
            "devDependencies": {"@playwright/test": PLAYWRIGHT_VERSION},
        }

    def _write(self, relative: str, content: str) -> Path:
        path = self.output_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path
