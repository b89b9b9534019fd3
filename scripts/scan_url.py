#!/usr/bin/env python3
"""Open a URL in headless Chromium and run the detection pipeline on it."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from playwright.async_api import async_playwright

from m365guard.analyzer.capture import PageCapture
from m365guard.analyzer.monitor import ReevaluationController
from m365guard.analyzer.session import ProtectionSession
from m365guard.config import configure_logging, load_config, validate_config


async def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("url")
    parser.add_argument("--watch", type=float, default=0.0, help="Seconds to keep monitoring")
    args = parser.parse_args()

    config = load_config()
    configure_logging(config.log_level)
    errors = validate_config(config)
    if errors:
        for error in errors:
            print(f"Config error: {error}")
        return 2

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=True)
        try:
            page = await browser.new_page()
            response = await page.goto(args.url, wait_until="domcontentloaded", timeout=30000)
            session = ProtectionSession.from_config(config, PageCapture(page, response))
            verdict = await session.run()

            if args.watch > 0:
                monitor = ReevaluationController.from_config(session, config)
                if monitor.start():
                    await asyncio.sleep(args.watch)
                    monitor.stop("watch finished")

            await session.dispatcher.drain()
            await session.close()
        finally:
            await browser.close()

    if verdict is None:
        print("No verdict (detection rules unavailable)")
        return 1
    print(json.dumps(session.status(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
