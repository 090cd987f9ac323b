"""Confirmation gate for destructive actions (navigation, form submission)."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ConfirmationGate:
    """Asks the user to allow or deny an action.

    ``ask`` returns True (allow), False (deny) or None (dismissed). Anything
    other than an explicit allow is treated as a denial.
    """

    async def ask(self, kind: str, detail: str) -> Optional[bool]:
        raise NotImplementedError

    async def confirm(self, kind: str, detail: str, timeout: Optional[float] = None) -> bool:
        try:
            answer = await asyncio.wait_for(self.ask(kind, detail), timeout)
        except asyncio.TimeoutError:
            logger.info("Confirmation for %s timed out; treating as denied", kind)
            return False
        logger.info("Confirmation for %s: %s", kind, {True: "allowed", False: "denied"}.get(answer, "dismissed"))
        return answer is True


class StaticConfirmation(ConfirmationGate):
    """Always gives the same answer (headless runs, tests)."""

    def __init__(self, answer: Optional[bool]):
        self.answer = answer

    async def ask(self, kind: str, detail: str) -> Optional[bool]:
        return self.answer


class ConsoleConfirmation(ConfirmationGate):
    """Prompts on the terminal; an empty answer counts as a dismissal."""

    async def ask(self, kind: str, detail: str) -> Optional[bool]:
        try:
            reply = await asyncio.to_thread(input, f"\n[confirm {kind}] {detail} [y/n] ")
        except EOFError:
            return None
        reply = reply.strip().lower()
        if not reply:
            return None
        return reply in ("y", "yes")
