"""
Selector resolution policy.

Turns one observed element into one locator string by strict priority:

1. dedicated test-identifier attribute (``data-testid`` and friends)
2. stable ``id``
3. a class token that does not look generated
4. ``aria-label``, then ``role`` / ``name`` / ``placeholder``
5. visible text
6. positional ``tag:nth-of-type(n)`` (low confidence)

Everything here is a pure function of its input.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple

from testsmith.core.schemas import ElementCandidate, PageObservation

TEST_ID_ATTRIBUTES = ("data-testid", "data-test-id", "data-test", "data-cy", "data-qa")
SEMANTIC_ATTRIBUTES = ("role", "name", "placeholder")

TIER_TEST_ID = 1
TIER_ID = 2
TIER_CLASS = 3
TIER_SEMANTIC = 4
TIER_TEXT = 5
TIER_POSITIONAL = 6

MAX_TEXT_LENGTH = 50

_VOLATILE_CLASS_PATTERNS = [
    re.compile(r"^css-[a-z0-9]+$", re.I),          # emotion
    re.compile(r"^sc-[a-zA-Z0-9]+$"),               # styled-components
    re.compile(r"^jsx-\d+$"),                       # styled-jsx
    re.compile(r"^[a-zA-Z]+_[a-zA-Z0-9]+__[a-zA-Z0-9_-]{4,}$"),  # css modules
    re.compile(r"^_[a-zA-Z0-9]{5,}$"),
    re.compile(r"^[a-f0-9]{6,}$", re.I),
    re.compile(r"^(ng|v|svelte)-[a-z0-9]{5,}$", re.I),
]
_STATE_CLASSES = {
    "active", "disabled", "hover", "focus", "focused", "selected", "open",
    "closed", "hidden", "visible", "show", "shown", "loading", "is-active",
    "is-open", "is-loading", "is-disabled",
}
_VOLATILE_ID_PATTERNS = [
    re.compile(r"^(ember|react-select-|headlessui-|radix-|mui-|:r)[\w:-]*\d", re.I),
    re.compile(r"^[a-f0-9]{8,}$", re.I),
    re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-"),
]
_SIMPLE_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


@dataclass(frozen=True)
class ResolvedSelector:
    locator: str
    tier: int
    strategy: str
    low_confidence: bool = False


def _digit_ratio(token: str) -> float:
    if not token:
        return 0.0
    return sum(ch.isdigit() for ch in token) / len(token)


def is_volatile_class(token: str) -> bool:
    if token.lower() in _STATE_CLASSES:
        return True
    if any(p.search(token) for p in _VOLATILE_CLASS_PATTERNS):
        return True
    return len(token) >= 4 and _digit_ratio(token) > 0.3


def is_stable_id(value: str) -> bool:
    if not value or value.isdigit():
        return False
    if any(p.search(value) for p in _VOLATILE_ID_PATTERNS):
        return False
    return _digit_ratio(value) <= 0.5


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def normalize_text(text: str) -> str:
    return " ".join((text or "").split())


def resolve_selector(element: ElementCandidate) -> ResolvedSelector:
    """
    Choose one locator for an element.

    Args:
        element: Observed element with its candidate attributes

    Returns:
        ResolvedSelector with the locator string and the priority tier that produced it

    Example:
        >>> resolve_selector(ElementCandidate(tag="button", attributes={"id": "submit"})).locator
        '#submit'
    """
    attrs = element.attributes
    tag = element.tag or "*"

    for attr in TEST_ID_ATTRIBUTES:
        value = attrs.get(attr)
        if value:
            return ResolvedSelector(f"[{attr}={_quote(value)}]", TIER_TEST_ID, "test_id")

    element_id = attrs.get("id", "").strip()
    if element_id and is_stable_id(element_id):
        if _SIMPLE_IDENT.match(element_id):
            return ResolvedSelector(f"#{element_id}", TIER_ID, "id")
        return ResolvedSelector(f"[id={_quote(element_id)}]", TIER_ID, "id")

    for token in attrs.get("class", "").split():
        if _SIMPLE_IDENT.match(token) and not is_volatile_class(token):
            return ResolvedSelector(f"{tag}.{token}", TIER_CLASS, "class")

    aria_label = attrs.get("aria-label")
    if aria_label:
        return ResolvedSelector(f"[aria-label={_quote(aria_label)}]", TIER_SEMANTIC, "aria_label")
    for attr in SEMANTIC_ATTRIBUTES:
        value = attrs.get(attr)
        if value:
            return ResolvedSelector(f"{tag}[{attr}={_quote(value)}]", TIER_SEMANTIC, attr)

    text = normalize_text(element.text)
    if text and len(text) <= MAX_TEXT_LENGTH:
        return ResolvedSelector(f"{tag}:has-text({_quote(text)})", TIER_TEXT, "text")

    return ResolvedSelector(
        f"{tag}:nth-of-type({max(1, element.index)})",
        TIER_POSITIONAL,
        "position",
        low_confidence=True,
    )


# --------------------------------------------------------------------------- #
# Role names
# --------------------------------------------------------------------------- #

_TAG_SUFFIXES = {
    "input": "Input",
    "textarea": "Input",
    "button": "Button",
    "a": "Link",
    "select": "Select",
    "form": "Form",
}


def _camel(words: Iterable[str]) -> str:
    words = [w for w in words if w]
    if not words:
        return ""
    head, *rest = words
    return head.lower() + "".join(w[:1].upper() + w[1:].lower() for w in rest)


def _split_words(value: str) -> list:
    # Break camelCase, snake_case, kebab-case and free text into words
    value = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", value)
    return re.findall(r"[A-Za-z0-9]+", value)


def role_name_for(element: ElementCandidate) -> str:
    """Derive a logical role name such as ``usernameInput`` or ``submitButton``."""
    attrs = element.attributes
    tag = element.tag
    if tag == "input" and attrs.get("type") in ("submit", "button"):
        suffix = "Button"
    else:
        suffix = _TAG_SUFFIXES.get(tag, "Element")

    base = ""
    for source in (
        attrs.get("name"),
        attrs.get("id"),
        next((attrs[a] for a in TEST_ID_ATTRIBUTES if attrs.get(a)), None),
        attrs.get("aria-label"),
        attrs.get("placeholder"),
        normalize_text(element.text)[:MAX_TEXT_LENGTH],
    ):
        if source:
            base = _camel(_split_words(source)[:4])
            if base:
                break
    if not base:
        return f"{tag or 'element'}{element.index}{suffix}"
    if base[0].isdigit():
        base = f"{tag}{base[:1].upper()}{base[1:]}"
    if base.lower().endswith(suffix.lower()):
        return base
    return base + suffix


# --------------------------------------------------------------------------- #
# SelectorMap
# --------------------------------------------------------------------------- #


@dataclass
class SelectorMap:
    """
    Role name -> one locator.

    Merging keeps, per role, the candidate with the best (tier, locator) key,
    so merge order never changes the result and merging twice changes nothing.
    """
    _entries: Dict[str, ResolvedSelector] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, role: str) -> bool:
        return role in self._entries

    def get(self, role: str) -> Optional[str]:
        entry = self._entries.get(role)
        return entry.locator if entry else None

    def add(self, role: str, resolved: ResolvedSelector) -> None:
        current = self._entries.get(role)
        if current is None or _rank(resolved) < _rank(current):
            self._entries[role] = resolved

    def merge(self, other: SelectorMap) -> None:
        for role, resolved in other._entries.items():
            self.add(role, resolved)

    def merge_observation(self, observation: PageObservation) -> None:
        for element in observation.elements:
            self.add(role_name_for(element), resolve_selector(element))

    def merge_flat(self, mapping: Mapping[str, str]) -> None:
        """Fold in a flat map whose tiers are unknown; they rank after positional ones."""
        for role, locator in mapping.items():
            self.add(role, ResolvedSelector(locator, TIER_POSITIONAL + 1, "external"))

    def low_confidence_roles(self) -> list:
        return sorted(r for r, e in self._entries.items() if e.low_confidence)

    def as_dict(self) -> Dict[str, str]:
        return {role: self._entries[role].locator for role in sorted(self._entries)}

    @classmethod
    def from_observation(cls, observation: PageObservation) -> SelectorMap:
        selector_map = cls()
        selector_map.merge_observation(observation)
        return selector_map


def _rank(resolved: ResolvedSelector) -> Tuple[int, str]:
    return (resolved.tier, resolved.locator)
