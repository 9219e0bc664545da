"""
CLI tool to run pipeline stages for a voice intake.

Usage:
    python scripts/run_intake.py <intake_id> --user <user_id> [--stage all]

Examples:
    # Transcribe, extract and create the draft quote in one go
    python scripts/run_intake.py 3f1c... --user 9a2b...

    # Re-run extraction only, applying corrections from a file
    python scripts/run_intake.py 3f1c... --user 9a2b... --stage extract --corrections fixes.json
"""

import argparse
import asyncio
import json
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from src.errors import PipelineError
from src.logging_config import get_logger, setup_logging, start_request
from src.services.data_extraction import extract_intake
from src.services.quote_materializer import materialize_quote
from src.services.transcription import transcribe_intake

setup_logging()
logger = get_logger(__name__)

STAGES = ("transcribe", "extract", "draft")


async def run_intake(
    intake_id: str,
    user_id: str,
    stage: str = "all",
    corrections: dict | None = None,
) -> int:
    """Run the requested stage(s); returns a process exit code."""
    trace_id = start_request()
    stages = STAGES if stage == "all" else (stage,)

    try:
        for name in stages:
            if name == "transcribe":
                result = await transcribe_intake(intake_id, user_id)
            elif name == "extract":
                result = await extract_intake(intake_id, user_id, user_corrections_json=corrections, trace_id=trace_id)
                if result.requires_review and stage == "all":
                    print(json.dumps(result.model_dump(mode="json"), indent=2))
                    print(f"Intake needs review ({result.review_reason}); stopping before draft.")
                    return 2
            else:
                result = await materialize_quote(intake_id, user_id, trace_id=trace_id)
            print(json.dumps(result.model_dump(mode="json"), indent=2))
    except PipelineError as e:
        print(json.dumps(e.to_payload(), indent=2))
        return 1
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run pipeline stages for a voice intake")
    parser.add_argument("intake_id", help="Voice intake UUID")
    parser.add_argument("--user", required=True, help="Owning user UUID")
    parser.add_argument("--stage", choices=("all", *STAGES), default="all", help="Stage to run")
    parser.add_argument("--corrections", help="Path to a user corrections JSON file")

    args = parser.parse_args()

    corrections = None
    if args.corrections:
        with open(args.corrections) as f:
            corrections = json.load(f)

    sys.exit(asyncio.run(run_intake(args.intake_id, args.user, args.stage, corrections)))


if __name__ == "__main__":
    main()
