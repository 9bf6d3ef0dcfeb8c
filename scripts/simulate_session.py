"""Drive a synthetic orchestration session and print the session report as JSON."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engines.orchestration import OrchestrationLoop
from env_validation import EngineSettings
from telemetry import BehaviorEventStore

PROFILES = ("novice", "engaged", "expert")


class ManualClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def _record_profile(store: BehaviorEventStore, user_id: str, profile: str, now: float) -> None:
    """Record the behavior pattern that characterises ``profile``."""

    record = store.record_event
    record(user_id, "icp_analysis", "visit", timestamp=now)
    record(user_id, "icp_analysis", "section_time", {"section": "overview", "duration": 40}, now)
    record(user_id, "navigation", "tool_open", {"tool": "icp_analysis"}, now)
    if profile == "novice":
        for _ in range(3):
            record(user_id, "cost_calculator", "session", {"duration": 120}, now)
        return

    record(user_id, "icp_analysis", "section_time", {"section": "pain_points", "duration": 150}, now + 1)
    for _ in range(6):
        record(user_id, "icp_analysis", "buyer_persona_click", timestamp=now + 2)
    record(user_id, "icp_analysis", "export", {"type": "summary"}, now + 3)
    record(user_id, "navigation", "tool_open", {"tool": "cost_calculator"}, now + 4)
    record(user_id, "navigation", "tool_open", {"tool": "business_case"}, now + 5)
    for _ in range(6):
        record(user_id, "cost_calculator", "variable_adjustment", timestamp=now + 6)
    record(user_id, "cost_calculator", "export", {"type": "chart"}, now + 7)
    record(user_id, "cost_calculator", "edge_case_testing", timestamp=now + 8)
    if profile == "engaged":
        return

    for _ in range(3):
        record(user_id, "icp_analysis", "visit", timestamp=now + 9)
        record(user_id, "business_case", "visit", timestamp=now + 9)
    record(user_id, "icp_analysis", "customization", timestamp=now + 10)
    record(user_id, "cost_calculator", "section_time", {"section": "methodology", "duration": 130}, now + 10)
    for _ in range(4):
        record(user_id, "cost_calculator", "session", {"duration": 300}, now + 11)
        record(user_id, "business_case", "stakeholder_view_switch", timestamp=now + 11)
    record(user_id, "business_case", "content_customization", timestamp=now + 12)
    record(user_id, "business_case", "auto_population_accept", timestamp=now + 12)
    record(user_id, "business_case", "export", {"type": "pdf"}, now + 13)
    record(user_id, "business_case", "export", {"type": "docx"}, now + 14)


async def simulate(
    profile: str,
    *,
    ticks: int = 8,
    interval: float = 5.0,
    user_id: str = "sim-user",
    session_id: str = "sim-session",
    recognize_after: Optional[float] = None,
) -> Dict[str, object]:
    clock = ManualClock()
    store = BehaviorEventStore(clock=clock)
    # ticks are driven manually, so the background ticker must never fire
    settings = EngineSettings(tick_interval=3600.0)
    loop = OrchestrationLoop(store, settings=settings, clock=clock)
    loop.start(user_id, session_id)

    _record_profile(store, user_id, profile, clock())
    loop.analytics.start_step("icp-analysis")

    for _ in range(ticks):
        clock.advance(interval)
        if recognize_after is not None and loop.analytics.value_recognition_time is None:
            if clock() - loop.started_at >= recognize_after:
                loop.analytics.record_value_recognition()
                loop.analytics.record_export("icp_analysis", "pdf", True)
        loop.tick()
        await loop.wait_for_handlers(timeout=settings.handler_timeout)

    loop.analytics.end_step("icp-analysis")
    return loop.stop()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--profile", choices=PROFILES, default="engaged", help="Behavior pattern to simulate")
    parser.add_argument("--ticks", type=int, default=8, help="Number of control cycles to run (default: 8)")
    parser.add_argument("--interval", type=float, default=5.0, help="Simulated seconds between ticks")
    parser.add_argument(
        "--recognize-after",
        type=float,
        default=None,
        help="Simulated seconds after which value recognition is recorded",
    )
    parser.add_argument("--output", type=str, default=None, help="Optional path to write the JSON report")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.ticks < 0:
        print("--ticks must be non-negative", file=sys.stderr)
        return 2
    report = asyncio.run(
        simulate(args.profile, ticks=args.ticks, interval=args.interval, recognize_after=args.recognize_after)
    )
    text = json.dumps(report, indent=2, sort_keys=True, default=str)
    print(text)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
    return 0


if __name__ == "__main__":
    sys.exit(main())
