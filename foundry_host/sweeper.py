"""Periodic auto-shutdown and session preparation.

Run as ``python -m foundry_host.sweeper``.
"""

import asyncio
import logging

from foundry_host.bootstrap import get_dispatcher
from foundry_host.config import load_settings

SWEEP_ACTIONS = ("auto-shutdown-check", "prepare-sessions")
SWEEPER_ID = "system-sweeper"


async def run_once(dispatcher) -> dict:
    results = {}
    for action in SWEEP_ACTIONS:
        response = await dispatcher.handle({"action": action, "userId": SWEEPER_ID})
        if response["statusCode"] != 200:
            logging.warning("Sweep action %s failed: %s", action, response["body"])
        else:
            logging.info("Sweep action %s: %s", action, response["body"])
        results[action] = response
    return results


async def run_forever(dispatcher, interval: float) -> None:
    while True:
        try:
            await run_once(dispatcher)
        except Exception:
            logging.exception("Sweep pass failed")
        await asyncio.sleep(interval)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_forever(get_dispatcher(), load_settings().sweep_interval))
