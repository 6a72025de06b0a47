"""
flamefuse Command Line Interface

Converts captured telemetry dumps into profiling artifacts.

Dump format (JSON):
    {
        "startTime": 1000.0,
        "endTime": 1250.0,
        "trace": {"resources": [...], "frames": [...], "stacks": [...], "samples": [...]},
        "records": [{"contextId": "worker-1", "functionName": "f", "startTime": ..., "endTime": ...}],
        "contexts": {"worker-2": [{"functionName": "g", ...}]}
    }
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from flamefuse.core.config import FlameFuseConfig, get_config
from flamefuse.core.log_setup import setup_logging
from flamefuse.profiling.ingest import normalize_records, normalize_trace
from flamefuse.profiling.markers import MarkerRegistry
from flamefuse.profiling.session import ProfilingSession
from flamefuse.profiling.types import MarkerCategory, SampledTrace

logger = structlog.get_logger(__name__)

FORMATS = ("calltree", "flamechart")


class _ReplaySampler:
    """Sampler that hands back a trace captured elsewhere."""

    def __init__(self, trace: Optional[SampledTrace]):
        self.trace = trace

    async def start(self) -> bool:
        return self.trace is not None

    async def stop(self) -> Optional[SampledTrace]:
        return self.trace


def _clock(*times: float):
    """Clock that replays the dump's start and end times."""
    ticks = iter(times)
    return lambda: next(ticks)


async def replay_dump(data: Dict[str, Any], config: FlameFuseConfig) -> ProfilingSession:
    """Run a stopped session over a telemetry dump."""
    start_time = float(data.get("startTime", 0.0))
    end_time = float(data.get("endTime", start_time))
    main_id = config.export.main_context_id

    session = ProfilingSession(
        config=config,
        sampler=_ReplaySampler(normalize_trace(data.get("trace"))),
        markers=MarkerRegistry(),
        clock=_clock(start_time, end_time),
    )
    await session.start()

    # Flat records without a context id belong to the main context.
    session.add_records(normalize_records(data.get("records") or [], context_id=main_id))
    for context_id, records in (data.get("contexts") or {}).items():
        session.add_records(records, context_id=context_id)

    await session.stop()
    return session


def cmd_convert(input_path: Path, fmt: str, output: Optional[Path], config: FlameFuseConfig) -> int:
    """Convert a dump file into an artifact."""
    try:
        with open(input_path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read {input_path}: {e}", file=sys.stderr)
        return 1

    if not isinstance(data, dict):
        print(f"Error: {input_path} is not a telemetry dump object", file=sys.stderr)
        return 1

    session = asyncio.run(replay_dump(data, config))
    artifact = session.generate_call_tree() if fmt == "calltree" else session.generate_flame_chart()
    if artifact is None:
        print("Nothing to profile", file=sys.stderr)
        return 1

    text = artifact.to_json(indent=2)
    if output is None:
        print(text)
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text)
        logger.info("Artifact written", path=str(output), format=fmt)
    return 0


def cmd_markers() -> int:
    """Print the marker category palette."""
    for category in MarkerCategory:
        print(f"{category.value:<8} {category.default_color}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="flamefuse",
        description="flamefuse - multi-context profiling and telemetry aggregation",
    )
    parser.add_argument("--config", type=Path, help="JSON configuration file")
    parser.add_argument("--log-level", help="Override the configured log level")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Convert command
    convert_parser = subparsers.add_parser("convert", help="Convert a telemetry dump")
    convert_parser.add_argument("input", type=Path, help="Telemetry dump (JSON)")
    convert_parser.add_argument("--format", choices=FORMATS, default="calltree", help="Artifact format")
    convert_parser.add_argument("-o", "--output", type=Path, help="Output file (default: stdout)")

    # Markers command
    subparsers.add_parser("markers", help="Show marker categories and colors")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = FlameFuseConfig.from_file(args.config) if args.config else get_config()
    setup_logging(args.log_level or config.log_level, json_logs=config.json_logs)

    if args.command == "convert":
        return cmd_convert(args.input, args.format, args.output, config)
    if args.command == "markers":
        return cmd_markers()
    return 0


if __name__ == "__main__":
    sys.exit(main())
