"""Continuity engine command-line entry point.

Usage:
    # Metadata-only raccord insights for a scene vs. its predecessor
    python main.py analyze --project project.json --scene s2

    # Suggest the next camera angle after a scene
    python main.py suggest --project project.json --scene s2 --seed 7

    # Classify a list of continuity errors (JSON array of {type, description})
    python main.py classify --errors errors.json

    # Compare two rendered shots with a vision model
    python main.py validate --project project.json --scene s2 \
        --previous shots/s1.png --current shots/s2.png

    # Decide whether a failed shot is worth regenerating
    python main.py decide --failed shots/s2.png --reference shots/s1.png \
        --prompt "She drops the knife" --errors errors.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel

import config
from pipeline.error_classifier import classify_errors
from pipeline.llm import ModelCredentials, get_usage_summary
from pipeline.next_shot_advisor import NextShotAdvisor
from pipeline.raccord_analyzer import RaccordAnalyzer
from pipeline.retry_decision import RetryDecisionAgent
from pipeline.vision_validator import VisionContinuityValidator, assess_verdict, format_verdict
from pipeline.vocabulary import get_vocabulary
from schemas.continuity import ProjectSnapshot

console = Console()

_PROVIDER_KEYS = {
    "google": lambda: config.GOOGLE_API_KEY,
    "anthropic": lambda: config.ANTHROPIC_API_KEY,
    "openai": lambda: config.OPENAI_API_KEY,
}


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _read_json(path_str: str) -> Any:
    path = Path(path_str)
    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        sys.exit(1)
    return json.loads(path.read_text())


def load_project(path_str: str) -> ProjectSnapshot:
    return ProjectSnapshot.model_validate(_read_json(path_str))


def load_errors(path_str: str) -> list[dict]:
    data = _read_json(path_str)
    if isinstance(data, dict):
        data = data.get("errors", [])
    if not isinstance(data, list):
        console.print("[red]Errors file must hold a JSON array (or an object with 'errors').[/red]")
        sys.exit(1)
    return data


def resolve_credentials(provider: str | None) -> ModelCredentials | None:
    """Credentials for the chosen provider from the environment, if set."""
    name = (provider or config.DEFAULT_PROVIDER).strip().lower()
    key_fn = _PROVIDER_KEYS.get(name)
    key = key_fn() if key_fn else ""
    if not key:
        return None
    return ModelCredentials(api_key=key, provider=name)


def _print_json(title: str, payload: Any):
    console.print(Panel(escape(json.dumps(payload, indent=2, ensure_ascii=False)), title=title))


def _locales(args: argparse.Namespace):
    return get_vocabulary(args.locales.split(",")) if args.locales else None


def run_analyze(args: argparse.Namespace):
    project = load_project(args.project)
    insights = RaccordAnalyzer(project, _locales(args)).analyze(args.scene)
    _print_json(
        f"Raccord insights: {args.scene}",
        [i.model_dump(exclude_none=True) for i in insights],
    )


def run_suggest(args: argparse.Namespace):
    project = load_project(args.project)
    rng = random.Random(args.seed) if args.seed is not None else None
    advice = NextShotAdvisor(project, rng=rng).suggest(args.scene)
    if advice is None:
        console.print(f"[yellow]Unknown scene: {args.scene}[/yellow]")
        return
    _print_json(f"Next shot after {args.scene}", advice.model_dump())


def run_classify(args: argparse.Namespace):
    result = classify_errors(load_errors(args.errors), _locales(args))
    _print_json("Error classification", result.model_dump())


def run_validate(args: argparse.Namespace):
    project = load_project(args.project)
    current = project.scene(args.scene)
    previous = project.predecessor(args.scene)
    if current is None or previous is None:
        console.print(f"[yellow]Scene {args.scene} has no predecessor to compare with.[/yellow]")
        return
    credentials = resolve_credentials(args.provider)
    if credentials is None:
        console.print("[yellow]No API key configured, validation passes by default.[/yellow]")

    validator = VisionContinuityValidator(project)
    verdict = asyncio.run(
        validator.validate(args.current, args.previous, current, previous, credentials)
    )
    _print_json("Vision verdict", verdict.model_dump(by_alias=True, exclude_none=True))
    console.print(f"{escape(format_verdict(verdict))} -> gate: [bold]{assess_verdict(verdict, strict=args.strict)}[/bold]")
    console.print(f"Usage: {get_usage_summary()}")


def run_decide(args: argparse.Namespace):
    credentials = resolve_credentials(args.provider)
    agent = RetryDecisionAgent(vocabulary=_locales(args))
    decision = asyncio.run(
        agent.decide(args.failed, args.reference, args.prompt, load_errors(args.errors), credentials)
    )
    _print_json("Retry decision", decision.model_dump(by_alias=True, exclude_none=True))
    console.print(f"Usage: {get_usage_summary()}")


def main():
    parser = argparse.ArgumentParser(
        description="Continuity validation and retry decisions for AI-generated shots",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--locales", help="Vocabulary locales, comma-separated (default: DOP_LOCALES)")
    sub = parser.add_subparsers(dest="command", required=True)

    an = sub.add_parser("analyze", help="Raccord insights for a scene")
    an.add_argument("--project", "-p", required=True, help="Path to project JSON")
    an.add_argument("--scene", "-s", required=True, help="Scene id")

    sg = sub.add_parser("suggest", help="Suggest the next camera angle")
    sg.add_argument("--project", "-p", required=True, help="Path to project JSON")
    sg.add_argument("--scene", "-s", required=True, help="Last scene id")
    sg.add_argument("--seed", type=int, help="Seed for reproducible suggestions")

    cl = sub.add_parser("classify", help="Classify continuity errors")
    cl.add_argument("--errors", "-e", required=True, help="Path to errors JSON")

    va = sub.add_parser("validate", help="Vision check of two consecutive shots")
    va.add_argument("--project", "-p", required=True, help="Path to project JSON")
    va.add_argument("--scene", "-s", required=True, help="Current scene id")
    va.add_argument("--current", required=True, help="Current shot (path, URL or data URL)")
    va.add_argument("--previous", required=True, help="Previous shot (path, URL or data URL)")
    va.add_argument("--provider", help="google | anthropic | openai")
    va.add_argument("--strict", action="store_true", help="Retry on any character error")

    de = sub.add_parser("decide", help="Retry decision for a failed shot")
    de.add_argument("--failed", required=True, help="Failed shot (path, URL or data URL)")
    de.add_argument("--reference", required=True, help="Reference shot (path, URL or data URL)")
    de.add_argument("--prompt", required=True, help="Original generation prompt")
    de.add_argument("--errors", "-e", required=True, help="Path to errors JSON")
    de.add_argument("--provider", help="google | anthropic | openai")

    args = parser.parse_args()
    setup_logging()

    commands = {
        "analyze": run_analyze,
        "suggest": run_suggest,
        "classify": run_classify,
        "validate": run_validate,
        "decide": run_decide,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
