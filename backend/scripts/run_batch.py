#!/usr/bin/env python3
"""
Run a non-interactive batch of chapter generations against the writing service.

Run from backend/:
    python3 scripts/run_batch.py --start 5 --count 10
    python3 scripts/run_batch.py --start 5 --plan plan.yaml --policy abort

The plan file holds the same keys as the /api/batch/confirm body
(total_cycles, start_unit, user_adjustment, prompt_template_id, model,
reference_texts, estimated_words). Command line flags win over the plan.
Ctrl-C cancels after the current wait.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# ── ensure backend root is on sys.path so bare imports work ──
BACKEND_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_ROOT))

from core.config import Settings  # noqa: E402
from core.generation_client import GenerationClient  # noqa: E402
from models import BatchOptions, BatchSnapshot  # noqa: E402
from services.batch_orchestrator import (  # noqa: E402
    BatchOrchestrator,
    client_stream_factory,
    policy_decider,
)
from services.unit_gateway import HttpUnitGateway  # noqa: E402

logger = logging.getLogger("inkstream.cli")

PLAN_OPTION_KEYS = ("user_adjustment", "prompt_template_id", "model", "reference_texts", "estimated_words")


def load_plan(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        plan = yaml.safe_load(f) or {}
    if not isinstance(plan, dict):
        raise ValueError(f"plan file must contain a mapping: {path}")
    return plan


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate several chapters in a row")
    parser.add_argument("--start", type=int, help="First chapter number to generate")
    parser.add_argument("--count", type=int, help="Number of chapters to generate")
    parser.add_argument("--plan", help="YAML file with batch options")
    parser.add_argument(
        "--policy",
        choices=("continue", "abort"),
        default="continue",
        help="What to do when a chapter fails (default: continue)",
    )
    parser.add_argument("--base-url", help="Writing service base URL (overrides UPSTREAM_BASE_URL)")
    parser.add_argument("--novel-id", help="Novel id used in the service paths (overrides NOVEL_ID)")
    return parser


def build_orchestrator(settings: Settings, options: BatchOptions, policy: str) -> BatchOrchestrator:
    client = GenerationClient.from_settings(settings)
    gateway = HttpUnitGateway.from_settings(settings)
    return BatchOrchestrator(
        client_stream_factory(client, options),
        gateway.create_next_unit,
        gateway.is_unit_ready,
        policy_decider(policy),
        persist=gateway.save_unit,
        poll_interval_s=settings.poll_interval_s,
        grace_period_s=settings.grace_period_s,
        unit_ready_timeout_s=settings.unit_ready_timeout_s,
    )


def log_progress(snapshot: BatchSnapshot) -> None:
    logger.info(
        "batch state=%s index=%d/%d succeeded=%s failed=%s",
        snapshot.state.value,
        snapshot.current_index,
        snapshot.total_cycles,
        snapshot.succeeded,
        snapshot.failed,
    )


async def run(orchestrator: BatchOrchestrator, total_cycles: int, start_unit: int) -> BatchSnapshot:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    except NotImplementedError:
        # Windows event loops have no signal handlers; Ctrl-C then aborts hard.
        pass
    try:
        return await orchestrator.execute(total_cycles, start_unit)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    plan = load_plan(args.plan)

    overrides: Dict[str, Any] = {}
    if args.base_url:
        overrides["upstream_base_url"] = args.base_url
    if args.novel_id:
        overrides["novel_id"] = args.novel_id
    settings = Settings(**overrides)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    start_unit = args.start if args.start is not None else plan.get("start_unit")
    total_cycles = args.count if args.count is not None else plan.get("total_cycles", settings.default_total_cycles)
    if start_unit is None:
        print("--start (or start_unit in the plan file) is required")
        return 2
    if int(total_cycles) < 1 or int(start_unit) < 1:
        print("--start and --count must be positive")
        return 2

    options = BatchOptions(**{key: plan[key] for key in PLAN_OPTION_KEYS if key in plan})
    orchestrator = build_orchestrator(settings, options, args.policy)
    orchestrator.subscribe(log_progress)

    print(f"Batch: chapters {start_unit}..{int(start_unit) + int(total_cycles) - 1} policy={args.policy}")
    print("=" * 60)
    snapshot = asyncio.run(run(orchestrator, int(total_cycles), int(start_unit)))
    print("=" * 60)
    print(snapshot.summary)
    for failure in snapshot.failures:
        print(f"  第{failure.unit_number}章 [{failure.stage.value}] {failure.message}")
    return 0 if not snapshot.failed and not snapshot.cancelled else 1


if __name__ == "__main__":
    sys.exit(main())
