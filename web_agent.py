"""
Browser Agent - console runner

Opens Chromium with Playwright, registers the page as a tab and runs the
agent against it. Progress is printed per pane; with --compare a second
model runs side by side in its own pane against the same tab.

Setup:
    pip install -e .
    playwright install chromium
    export NIM_API_KEY=nvapi-...

Example:
    python web_agent.py "Summarize this page" --url https://example.com
"""

import argparse
import asyncio
import sys

from playwright.async_api import async_playwright

from browser_agent import (
    AgentOrchestrator,
    AgentSettings,
    ConsoleConfirmation,
    Coordinator,
    MessageRouter,
    PreferenceStore,
    SessionMemory,
    StaticConfirmation,
    StreamingCompletionClient,
    TabRegistry,
)
from browser_agent.config import NIM_MODELS, load_env, setup_logging


# ──────────────────────────────────────────────
# Console presentation
# ──────────────────────────────────────────────

def make_printer(pane: str):
    """Print AGENT_UPDATE messages for one pane."""
    prefix = f"[pane {pane}]"

    def show(update):
        event = update["event"]
        if event == "stream-chunk":
            sys.stdout.write(update["chunk"])
            sys.stdout.flush()
        elif event == "thinking-started":
            print(f"\n{prefix} thinking (round {update['iteration']})...")
        elif event == "tool-start":
            print(f"\n{prefix} → {update['tool']} {update['args']}")
        elif event == "tool-done":
            print(f"{prefix} ✓ {update['summary']}")
        elif event == "tool-error":
            print(f"{prefix} ✗ {update['tool']}: {update['error']}")
        elif event == "done":
            print(f"\n{prefix} done.")
        else:
            print(f"\n{prefix} {event}: {update.get('message', '')}")

    return show


# ──────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────

async def run(args) -> None:
    preferences = PreferenceStore()
    memory = SessionMemory()
    router = MessageRouter()
    settings = AgentSettings()
    confirmation = StaticConfirmation(True) if args.yes else ConsoleConfirmation()
    orchestrator = AgentOrchestrator(
        memory=memory,
        preferences=preferences,
        client=StreamingCompletionClient(base_url=settings.completion_base_url),
        router=router,
        confirmation=confirmation,
        settings=settings,
    )
    tabs = TabRegistry()
    coordinator = Coordinator(orchestrator, tabs, memory)

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=args.headless)
        page = await browser.new_page()
        await page.goto(args.url)
        tab = tabs.register(page)

        panes = [("1", args.model)]
        if args.compare:
            panes.append(("2", args.compare))
        for pane, model in panes:
            router.subscribe(make_printer(pane), pane=pane)
            await coordinator.handle(
                {"type": "RUN_AGENT", "userMessage": args.goal, "targetPane": pane,
                 "overrideModel": model, "tabId": tab.tab_id}
            )

        try:
            await coordinator.wait()
        finally:
            await coordinator.shutdown()
            await browser.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the browser agent against a page.")
    parser.add_argument("goal", help="What the agent should do")
    parser.add_argument("--url", default="https://example.com", help="Start URL")
    parser.add_argument("--model", help=f"Model id or alias ({', '.join(NIM_MODELS)})")
    parser.add_argument("--compare", metavar="MODEL", help="Run a second model side by side in pane 2")
    parser.add_argument("--headless", action="store_true")
    parser.add_argument("--yes", action="store_true", help="Allow navigation and form submission without asking")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    args.model = NIM_MODELS.get(args.model, args.model)
    args.compare = NIM_MODELS.get(args.compare, args.compare)

    load_env()
    setup_logging(args.log_level)
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
