"""Run every extraction lane against a short demo note and print the outcomes.

Usage (from repo root):
    python backend/scripts/smoke_compare.py

Usage (from backend/):
    python scripts/smoke_compare.py
    python scripts/smoke_compare.py "I need to call the garage. Egle was driving."
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from auto_extract.config import get_settings
from auto_extract.runtime.local_server import LlamaServerRuntime, LocalRuntimeConfig
from auto_extract.services.lanes import LaneOrchestrator

DEMO_NOTE = (
    "I called road maintenance this morning. Egle was driving in Klaipeda and she was scared of the ice. "
    "We should remember to buy winter tires. Maybe when I was a kid the seaside had white dunes."
)


async def _run(text: str, lane_id: str | None) -> list[dict]:
    settings = get_settings()
    runtime = LlamaServerRuntime(LocalRuntimeConfig.from_settings(settings))
    orchestrator = LaneOrchestrator(runtime, settings)
    try:
        if lane_id:
            lanes = [await orchestrator.run_lane(text, lane_id)]
        else:
            lanes = await orchestrator.compare(text)
    finally:
        await runtime.stop()
    return [lane.model_dump(mode="json", by_alias=True, exclude={"debug"}) for lane in lanes]


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("text", nargs="?", default=DEMO_NOTE)
    parser.add_argument("--lane", default=None, help="Run a single lane (local-llama, anthropic-haiku, openai-gpt5mini).")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
    print(json.dumps(asyncio.run(_run(args.text, args.lane)), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
