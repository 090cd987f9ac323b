"""Perception: turns the live page into a compact, token-bounded PageModel."""

import logging
import re
from typing import Any, Dict, Optional

from playwright.async_api import Page

from .models import (
    MAX_FORMS,
    MAX_HEADINGS,
    MAX_INTERACTABLE,
    MAX_MAIN_TEXT,
    FormField,
    FormSummary,
    Heading,
    InteractableElement,
    PageModel,
)

logger = logging.getLogger(__name__)

# Enumeration shared by read_page and index targeting; both must agree.
INTERACTIVE_SELECTOR = 'button, a[href], input, select, textarea, [role="button"], [role="link"]'
ELEMENT_TEXT_LIMIT = 200

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_WHITESPACE = re.compile(r"\s+")

_EXTRACT_JS = """
(limits) => {
    const textOf = (el) => ((el && (el.innerText || el.textContent)) || '').trim().slice(0, limits.elementText);

    const headings = [...document.querySelectorAll('h1, h2, h3')]
        .map(h => ({ tag: h.tagName, text: textOf(h) }))
        .filter(h => h.text.length > 0)
        .slice(0, limits.headings);

    const interactable = [...document.querySelectorAll(limits.selector)]
        .slice(0, limits.interactable)
        .map((el, i) => ({
            index: i,
            tag: el.tagName,
            type: el.getAttribute('type') || el.type || null,
            role: el.getAttribute('role'),
            text: textOf(el),
            ariaLabel: el.getAttribute('aria-label'),
            placeholder: el.getAttribute('placeholder'),
            name: el.name || el.id || null,
            href: el.href || null,
            value: typeof el.value === 'string' ? el.value : null,
        }));

    const forms = [...document.querySelectorAll('form')]
        .slice(0, limits.forms)
        .map(form => ({
            id: form.id || null,
            action: form.getAttribute('action') ? form.action : null,
            fields: [...form.querySelectorAll('input, select, textarea')].map(f => ({
                name: f.name || f.id || null,
                type: f.type || null,
                placeholder: f.getAttribute('placeholder'),
                required: !!f.required,
            })),
        }));

    const main = document.querySelector('main') || document.querySelector('article') || document.body;

    return {
        url: window.location.href,
        title: document.title,
        headings,
        interactable,
        forms,
        mainText: main ? (main.innerText || '').replace(/\\s+/g, ' ').trim().slice(0, limits.mainText) : '',
        pageHeight: document.body ? document.body.scrollHeight : 0,
        scrollY: window.scrollY,
    };
}
"""


def sanitize(value: Any, limit: Optional[int] = None) -> Optional[str]:
    """Strip control characters and collapse whitespace; empty becomes None."""
    if value is None:
        return None
    text = _WHITESPACE.sub(" ", _CONTROL_CHARS.sub(" ", str(value))).strip()
    if limit is not None:
        text = text[:limit]
    return text or None


def element_label(raw: Dict[str, Any]) -> Optional[str]:
    """Visible text, then aria-label, then placeholder."""
    for key in ("text", "ariaLabel", "placeholder"):
        label = sanitize(raw.get(key), ELEMENT_TEXT_LIMIT)
        if label:
            return label
    return None


def build_page_model(raw: Dict[str, Any]) -> PageModel:
    """Build a PageModel from the raw extraction, enforcing caps and sanitizing strings."""
    headings = []
    for item in raw.get("headings") or []:
        text = sanitize(item.get("text"), ELEMENT_TEXT_LIMIT)
        if text:
            headings.append(Heading(tag=sanitize(item.get("tag")) or "", text=text))
        if len(headings) == MAX_HEADINGS:
            break

    interactable = [
        InteractableElement(
            index=int(item.get("index", position)),
            tag=sanitize(item.get("tag")) or "",
            input_type=sanitize(item.get("type")),
            role=sanitize(item.get("role")),
            label=element_label(item),
            name=sanitize(item.get("name")),
            href=sanitize(item.get("href")),
            value=sanitize(item.get("value"), ELEMENT_TEXT_LIMIT),
        )
        for position, item in enumerate((raw.get("interactable") or [])[:MAX_INTERACTABLE])
    ]

    forms = [
        FormSummary(
            id=sanitize(form.get("id")),
            action=sanitize(form.get("action")),
            fields=[
                FormField(
                    name=sanitize(f.get("name")),
                    type=sanitize(f.get("type")),
                    placeholder=sanitize(f.get("placeholder")),
                    required=bool(f.get("required")),
                )
                for f in form.get("fields") or []
            ],
        )
        for form in (raw.get("forms") or [])[:MAX_FORMS]
    ]

    return PageModel(
        url=sanitize(raw.get("url")) or "",
        title=sanitize(raw.get("title")) or "",
        headings=headings,
        interactable=interactable,
        forms=forms,
        main_text=sanitize(raw.get("mainText"), MAX_MAIN_TEXT) or "",
        page_height=int(raw.get("pageHeight") or 0),
        scroll_y=int(raw.get("scrollY") or 0),
    )


class Perception:
    """
    Extracts headings, interactive elements, forms and the main text.
    Every list is capped so the summary stays within a predictable token cost.
    """

    async def read_page(self, page: Page) -> PageModel:
        raw = await page.evaluate(
            _EXTRACT_JS,
            {
                "selector": INTERACTIVE_SELECTOR,
                "headings": MAX_HEADINGS,
                "interactable": MAX_INTERACTABLE,
                "forms": MAX_FORMS,
                "mainText": MAX_MAIN_TEXT,
                "elementText": ELEMENT_TEXT_LIMIT,
            },
        )
        model = build_page_model(raw)
        logger.debug("Read %s: %d elements, %d headings", model.url, len(model.interactable), len(model.headings))
        return model
