"""Controller: the in-page actuator that resolves targets and performs actions."""

import asyncio
import itertools
import logging
from typing import Any, Dict, Optional

from playwright.async_api import Page

from .errors import AgentError, ElementNotFound
from .models import (
    MAX_MAIN_TEXT,
    ActionRequest,
    ActionResult,
    ClickAction,
    FillFormAction,
    GetTextAction,
    NavigateAction,
    PageModel,
    ScrollAction,
    SubmitFormAction,
    TargetHints,
)
from .perception import INTERACTIVE_SELECTOR, Perception, sanitize

logger = logging.getLogger(__name__)

TARGET_ATTRIBUTE = "data-agent-target"
CLICKABLE_SELECTOR = 'button, a, [role="button"]'

# Strategies run in order: selector, index, text, aria-label, point.
_RESOLVE_JS = """
([hints, token, attr, interactive, clickable]) => {
    let target = null;
    let strategy = null;
    const attempt = (name, find) => {
        if (target) return;
        try {
            target = find() || null;
        } catch (e) {
            target = null;
        }
        if (target) strategy = name;
    };

    if (hints.selector) attempt('selector', () => document.querySelector(hints.selector));
    if (hints.index !== null && hints.index !== undefined) {
        attempt('index', () => document.querySelectorAll(interactive)[hints.index]);
    }
    if (hints.text) {
        const needle = hints.text.toLowerCase();
        attempt('text', () => [...document.querySelectorAll(clickable)]
            .find(el => (el.innerText || el.textContent || '').toLowerCase().includes(needle)));
    }
    if (hints.ariaLabel) {
        attempt('aria_label', () => [...document.querySelectorAll('[aria-label], [title]')]
            .find(el => el.getAttribute('aria-label') === hints.ariaLabel
                || el.getAttribute('title') === hints.ariaLabel));
    }
    if (typeof hints.x === 'number' && typeof hints.y === 'number') {
        attempt('point', () => document.elementFromPoint(hints.x, hints.y));
    }
    if (!target) return null;

    document.querySelectorAll('[' + attr + ']').forEach(el => el.removeAttribute(attr));
    target.setAttribute(attr, token);
    return { strategy, tag: target.tagName };
}
"""

_RESOLVE_FIELD_JS = """
([selector, fieldName, token, attr]) => {
    let target = null;
    if (selector) {
        try { target = document.querySelector(selector); } catch (e) { target = null; }
    }
    if (!target && fieldName) {
        target = [...document.querySelectorAll('input, textarea, select')]
            .find(el => el.name === fieldName || el.id === fieldName) || null;
    }
    if (!target) return null;
    document.querySelectorAll('[' + attr + ']').forEach(el => el.removeAttribute(attr));
    target.setAttribute(attr, token);
    return { tag: target.tagName };
}
"""

_SUBMIT_JS = """
(selector) => {
    let form = document.querySelector(selector || 'form');
    if (form && form.tagName !== 'FORM') form = form.form || form.closest('form');
    if (!form) return false;
    if (typeof form.requestSubmit === 'function') form.requestSubmit();
    else form.submit();
    return true;
}
"""


class PageInterface:
    """
    Runs inside the page's trust boundary: reads the page model and executes
    actions. Every action yields an ActionResult, also when it fails.
    """

    def __init__(
        self,
        page: Page,
        perception: Optional[Perception] = None,
        click_settle: float = 0.3,
        scroll_settle: float = 0.5,
        action_timeout_ms: int = 5000,
    ):
        self.page = page
        self.perception = perception or Perception()
        self.click_settle = click_settle
        self.scroll_settle = scroll_settle
        self.action_timeout_ms = action_timeout_ms
        self._tokens = itertools.count(1)
        self._handlers = {
            ClickAction: self.click,
            FillFormAction: self.fill_form,
            ScrollAction: self.scroll,
            NavigateAction: self.navigate,
            GetTextAction: self.get_text,
            SubmitFormAction: self.submit_form,
        }

    async def read_page(self) -> PageModel:
        return await self.perception.read_page(self.page)

    async def execute(self, action: ActionRequest) -> ActionResult:
        """Run an action and convert any failure into a structured result."""
        handler = self._handlers.get(type(action))
        if handler is None:
            return ActionResult.fail(f"Unknown action type: {getattr(action, 'kind', type(action).__name__)}")
        try:
            return await handler(action)
        except AgentError as e:
            return ActionResult.fail(str(e))
        except Exception as e:
            logger.warning("Action %s failed: %s", action.kind, e)
            return ActionResult.fail(str(e) or type(e).__name__)

    async def _resolve(self, hints: TargetHints) -> Optional[Dict[str, Any]]:
        token = f"t{next(self._tokens)}"
        found = await self.page.evaluate(
            _RESOLVE_JS, [hints.to_js(), token, TARGET_ATTRIBUTE, INTERACTIVE_SELECTOR, CLICKABLE_SELECTOR]
        )
        if not found:
            return None
        logger.debug("Resolved %s via %s", hints.describe(), found["strategy"])
        return {**found, "token": token}

    def _locator(self, token: str):
        return self.page.locator(f'[{TARGET_ATTRIBUTE}="{token}"]')

    async def click(self, action: ClickAction) -> ActionResult:
        found = await self._resolve(action.target)
        if not found:
            raise ElementNotFound(f"Element not found: {action.target.describe()}")
        locator = self._locator(found["token"])
        await locator.evaluate("el => el.scrollIntoView({ behavior: 'smooth', block: 'center' })")
        await asyncio.sleep(self.click_settle)
        await locator.focus()
        await locator.click(timeout=self.action_timeout_ms)
        return ActionResult.ok(action="click", element=found["tag"], strategy=found["strategy"])

    async def fill_form(self, action: FillFormAction) -> ActionResult:
        token = f"t{next(self._tokens)}"
        found = await self.page.evaluate(
            _RESOLVE_FIELD_JS, [action.selector, action.field_name, token, TARGET_ATTRIBUTE]
        )
        if not found:
            raise ElementNotFound(f"Field not found: {action.field_name or action.selector}")
        locator = self._locator(token)
        await locator.focus()
        if found["tag"] == "SELECT":
            await locator.select_option(action.value, timeout=self.action_timeout_ms)
        else:
            await locator.fill(action.value, timeout=self.action_timeout_ms)
        # Reactive frameworks only pick up the new value through these events.
        await locator.dispatch_event("input")
        await locator.dispatch_event("change")
        return ActionResult.ok(
            action="fill_form", field=action.field_name or action.selector, value=action.value
        )

    async def scroll(self, action: ScrollAction) -> ActionResult:
        await self.page.evaluate("(dy) => window.scrollBy({ top: dy, behavior: 'smooth' })", action.delta)
        await asyncio.sleep(self.scroll_settle)
        scroll_y = await self.page.evaluate("() => window.scrollY")
        return ActionResult.ok(action="scroll", scrollY=scroll_y)

    async def navigate(self, action: NavigateAction) -> ActionResult:
        await self.page.evaluate("(url) => { window.location.href = url; }", action.url)
        return ActionResult.ok(action="navigate", url=action.url)

    async def get_text(self, action: GetTextAction) -> ActionResult:
        found = await self._resolve(action.target)
        if not found:
            return ActionResult.ok(text=None)
        text = await self._locator(found["token"]).inner_text(timeout=self.action_timeout_ms)
        return ActionResult.ok(text=sanitize(text, MAX_MAIN_TEXT))

    async def submit_form(self, action: SubmitFormAction) -> ActionResult:
        submitted = await self.page.evaluate(_SUBMIT_JS, action.selector)
        if not submitted:
            return ActionResult.fail("Form not found")
        return ActionResult.ok(action="submit_form")
