"""
CLI entry point for the CasePrep feedback pipeline.

Usage:
    python main.py api [--host 0.0.0.0] [--port 8000]
    python main.py generate --attempt-id <uuid> --type DRILL --content "..."
        [--metric revenue=1200 --metric margin=0.18]
    python main.py get <feedback-id>
"""

import argparse
import asyncio
import json
import sys
from typing import Dict, List

from caseprep.bootstrap import build_services
from caseprep.config import get_settings
from caseprep.exceptions import CasePrepError
from caseprep.logging_setup import configure_logging


def _parse_metrics(pairs: List[str]) -> List[Dict[str, object]]:
    metrics = []
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"metric must be name=value, got {pair!r}")
        try:
            metrics.append({"name": name, "value": float(value)})
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"metric value must be numeric: {pair!r}") from exc
    return metrics


async def _generate(args) -> dict:
    metrics = _parse_metrics(args.metric)
    services = await build_services(get_settings())
    try:
        feedback = await services.orchestrator.generate(
            args.attempt_id,
            args.type,
            {"content": args.content, "metrics": metrics},
        )
        return feedback.to_json_dict()
    finally:
        await services.aclose()


async def _get(args) -> dict:
    services = await build_services(get_settings())
    try:
        feedback = await services.orchestrator.get(args.feedback_id)
        return feedback.to_json_dict() if feedback is not None else {}
    finally:
        await services.aclose()


def cmd_generate(args):
    """Generate feedback for one attempt and print it."""
    print(json.dumps(asyncio.run(_generate(args)), indent=2))


def cmd_get(args):
    """Print a stored feedback record."""
    result = asyncio.run(_get(args))
    if not result:
        print(f"Feedback {args.feedback_id} not found")
        sys.exit(1)
    print(json.dumps(result, indent=2))


def cmd_api(args):
    """Start the FastAPI server."""
    import uvicorn

    from caseprep.api import create_app

    settings = get_settings()
    host = args.host or settings.api.host
    port = args.port or settings.api.port
    print(f"Starting CasePrep feedback API on {host}:{port}")
    uvicorn.run(create_app(settings=settings), host=host, port=port, log_config=None)


def main():
    parser = argparse.ArgumentParser(
        description="CasePrep - AI feedback for case interview practice"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # api
    p_api = subparsers.add_parser("api", help="Start REST API server")
    p_api.add_argument("--host", default=None)
    p_api.add_argument("--port", type=int, default=None)

    # generate
    p_gen = subparsers.add_parser("generate", help="Generate feedback for an attempt")
    p_gen.add_argument("--attempt-id", required=True, help="Attempt UUID")
    p_gen.add_argument("--type", choices=["DRILL", "SIMULATION"], default="DRILL")
    p_gen.add_argument("--content", required=True, help="Candidate response text")
    p_gen.add_argument(
        "--metric", action="append", default=[], help="Metric as name=value (repeatable)"
    )

    # get
    p_get = subparsers.add_parser("get", help="Show stored feedback")
    p_get.add_argument("feedback_id")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(get_settings().logging)

    commands = {
        "api": cmd_api,
        "generate": cmd_generate,
        "get": cmd_get,
    }
    try:
        commands[args.command](args)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except CasePrepError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        if exc.details:
            print(json.dumps(exc.details, indent=2, default=str), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
