#!/usr/bin/env python3
"""
Sandbox Analyst - Main Entry Point

Analyse a local CSV end to end: a fresh Docker sandbox runs the model's code,
charts are collected, and a narrative report is written next to them.

Usage:
    sandbox-analyst data.csv                                  # default instruction
    sandbox-analyst data.csv "Which region grows fastest?"    # custom instruction
    sandbox-analyst data.csv "Compare with https://..." --out report/
    sandbox-analyst --help
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from docker.errors import DockerException
from dotenv import load_dotenv

from .config import Config
from .errors import ConfigurationError
from .sandbox.container_utils import cleanup_sandbox_containers
from .service import AnalystService, Intake


def write_report(result, out_dir: Path) -> list:
    out_dir.mkdir(parents=True, exist_ok=True)
    written = [out_dir / "narrative.md"]
    written[0].write_text(result.narrative, encoding="utf-8")
    for artifact in result.artifacts:
        path = out_dir / f"chart_{artifact.ordinal + 1:02d}.png"
        path.write_bytes(artifact.data)
        written.append(path)
    return written


async def run_once(cfg: Config, dataset: bytes, instruction: str):
    service = AnalystService(cfg)
    service.start()
    try:
        return await service.handle_turn(Intake(sender_id="cli", instruction_text=instruction, dataset_bytes=dataset))
    finally:
        await service.close()


def main():
    """Main entry point for the Sandbox Analyst CLI."""
    parser = argparse.ArgumentParser(description="Sandbox Analyst - CSV analysis in a disposable Docker sandbox")
    parser.add_argument("dataset", type=Path, help="CSV file to analyse")
    parser.add_argument("instruction", nargs="?", default="", help="What to analyse (URLs are researched for context)")
    parser.add_argument("--env", type=Path, default=None, help="dotenv file (default: sandbox.env, then .env)")
    parser.add_argument("--out", type=Path, default=Path("report"), help="output directory (default: ./report)")
    parser.add_argument("--keep-containers", action="store_true", help="do not sweep leftover sandbox containers at startup")
    parser.add_argument("--log-level", default="WARNING", help="logging level (default: WARNING)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("🐳 Sandbox Analyst - CSV analysis in a disposable sandbox")
    print("=" * 60)

    # Load environment configuration
    env_file = args.env
    if env_file is None:
        env_file = next((p for p in (Path("sandbox.env"), Path(".env")) if p.exists()), None)
    if env_file is not None and load_dotenv(env_file):
        print(f"✅ Loaded configuration from {env_file}")
    else:
        print("⚠️  No .env file found, using process environment")

    try:
        cfg = Config.from_env(env_file_path=env_file)
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}")
        sys.exit(2)
    print(f"✅ Configuration loaded: model {cfg.openai_model}, quota {cfg.artifact_quota}, max {cfg.max_rounds} rounds")

    if not args.dataset.is_file():
        print(f"❌ Dataset not found: {args.dataset}")
        sys.exit(2)
    dataset = args.dataset.read_bytes()
    print(f"✅ Read {len(dataset)} bytes from {args.dataset}")

    if not args.keep_containers:
        try:
            cleanup_sandbox_containers()
        except DockerException as e:
            print(f"❌ Docker is not available: {e}")
            sys.exit(2)
        print("✅ Cleaned up existing containers")

    print("🤖 Analyzing... this can take a few minutes")
    outcome = asyncio.run(run_once(cfg, dataset, args.instruction))

    print()
    print(outcome.notice)
    if outcome.result is None:
        sys.exit(1)

    written = write_report(outcome.result, args.out)
    print()
    for path in written:
        print(f"📄 {path}")
    if outcome.result.external_context:
        print("🌐 External context was used")


if __name__ == "__main__":
    main()
