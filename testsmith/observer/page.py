from __future__ import annotations

from typing import Any, Dict, List

from testsmith.core.schemas import ElementCandidate, PageObservation

CANDIDATE_ATTRIBUTES = [
    "id", "class", "data-testid", "data-test-id", "data-test", "data-cy", "data-qa",
    "aria-label", "role", "name", "placeholder", "type", "href",
]

INTERACTIVE_SELECTOR = (
    'input:not([type="hidden"]), button, a[href], textarea, select, form, '
    '[role="button"], [role="link"], [role="tab"], [role="menuitem"]'
)

_EXTRACT_SCRIPT = """
([selector, attrNames, limit]) => {
  const elements = [];
  for (const el of document.querySelectorAll(selector)) {
    if (elements.length >= limit) break;
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden') continue;
    const attributes = {};
    for (const name of attrNames) {
      const value = el.getAttribute(name);
      if (value !== null && value !== '') attributes[name] = value;
    }
    let index = 1;
    let sib = el.previousElementSibling;
    while (sib) {
      if (sib.tagName === el.tagName) index += 1;
      sib = sib.previousElementSibling;
    }
    const text = el.tagName === 'FORM' ? '' : (el.innerText || el.value || '').replace(/\\s+/g, ' ').trim().slice(0, 100);
    elements.push({ tag: el.tagName.toLowerCase(), attributes, text, index });
  }
  const forms = Array.from(document.querySelectorAll('form')).slice(0, 20).map((form) => ({
    action: form.getAttribute('action') || '',
    method: (form.getAttribute('method') || 'GET').toUpperCase(),
    inputs: Array.from(form.querySelectorAll('input, select, textarea')).map((input) => ({
      type: input.getAttribute('type') || input.tagName.toLowerCase(),
      name: input.getAttribute('name') || '',
      id: input.id || '',
      placeholder: input.getAttribute('placeholder') || '',
      required: input.hasAttribute('required'),
    })),
  }));
  return { title: document.title, url: window.location.href, elements, forms };
}
"""


async def observe_page(page, max_elements: int = 100) -> PageObservation:
    """Snapshot title, URL, interactive elements and forms of a Playwright page."""
    data: Dict[str, Any] = await page.evaluate(
        _EXTRACT_SCRIPT, [INTERACTIVE_SELECTOR, CANDIDATE_ATTRIBUTES, max_elements]
    )
    return observation_from_payload(data)


def observation_from_payload(data: Dict[str, Any]) -> PageObservation:
    elements: List[ElementCandidate] = [
        ElementCandidate.from_dict(raw) for raw in data.get("elements") or []
    ]
    return PageObservation(
        title=str(data.get("title") or ""),
        url=str(data.get("url") or ""),
        elements=elements,
        forms=list(data.get("forms") or []),
    )
