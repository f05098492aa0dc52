#!/usr/bin/env python3
"""
MergeGate CLI - run CI-gated merges from a local checkout.

Usage:
  mergegate merge --repo octo/app --branch feature/login --workspace /path/to/repo
  mergegate show merge_1a2b3c4d5e6f
  mergegate classify job.log
  mergegate force-merge --repo octo/app --branch hotfix --authorized-by alice \
      --justification "incident 4711, CI provider outage"
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from mergegate.core.config import Settings, settings as default_settings
from mergegate.core.logging import setup_logging
from mergegate.execution_engine.errors import OverrideNotAuthorized, WorkspaceMismatch
from mergegate.execution_engine.failure_classifier import classify
from mergegate.execution_engine.merge_executor import OverrideAuthorization
from mergegate.execution_engine.merge_types import MergeDecision, MergeStrategy
from mergegate.execution_engine.timing import CancellationToken
from mergegate.main import build_client, build_executor, build_store, check_repository
from mergegate.services.context_store import ContextNotFound, JsonFileContextStore

EXIT_APPROVED = 0
EXIT_ABORTED = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergegate", description="CI-gated merge orchestrator")
    parser.add_argument("--log-level", default=None, help="Override MERGEGATE_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_target_args(cmd: argparse.ArgumentParser) -> None:
        cmd.add_argument("--repo", required=True, help="Repository as owner/name")
        cmd.add_argument("--branch", required=True, help="Source branch")
        cmd.add_argument("--target", default=None, help="Target branch (default from config)")
        cmd.add_argument(
            "--strategy",
            choices=[s.value for s in MergeStrategy],
            default=None,
            help="Merge strategy (default from config)",
        )
        cmd.add_argument("--workspace", default=None, help="Local checkout (default: config)")

    merge_cmd = sub.add_parser("merge", help="Wait for CI, auto-fix, verify and merge")
    add_target_args(merge_cmd)

    show_cmd = sub.add_parser("show", help="Print a stored merge attempt as JSON")
    show_cmd.add_argument("attempt_id")
    show_cmd.add_argument(
        "--store-dir", default=None, help="Context store directory (default: config)"
    )

    classify_cmd = sub.add_parser("classify", help="Classify a CI job log")
    classify_cmd.add_argument("logfile", help="Path to the log, or - for stdin")

    force_cmd = sub.add_parser("force-merge", help="Merge without the CI gate (override)")
    add_target_args(force_cmd)
    force_cmd.add_argument("--authorized-by", required=True, help="Who approved the override")
    force_cmd.add_argument("--justification", required=True, help="Why the gate is bypassed")

    return parser


def _settings_for(args: argparse.Namespace, base: Settings) -> Settings:
    update = {}
    if getattr(args, "workspace", None):
        update["workspace_root"] = str(Path(args.workspace).resolve())
    if args.log_level:
        update["log_level"] = args.log_level
    return base.model_copy(update=update) if update else base


def _print_decision(decision: MergeDecision) -> None:
    print(decision.model_dump_json(indent=2))
    if not decision.approved:
        print(f"Merge aborted: {decision.reason}", file=sys.stderr)


async def _run_merge(args: argparse.Namespace, cfg: Settings) -> MergeDecision:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by user")
    except (NotImplementedError, RuntimeError):
        # No signal handlers on this platform; Ctrl-C falls back to KeyboardInterrupt
        pass

    async with build_client(cfg) as client:
        executor = build_executor(args.repo, client, cfg, store=build_store(cfg))
        try:
            return await executor.execute(
                args.branch,
                target_branch=args.target,
                strategy=MergeStrategy(args.strategy) if args.strategy else None,
                token=token,
            )
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass


async def _run_force_merge(
    args: argparse.Namespace, cfg: Settings, authorization: OverrideAuthorization
) -> MergeDecision:
    async with build_client(cfg) as client:
        executor = build_executor(args.repo, client, cfg, store=build_store(cfg))
        return await executor.force_merge(
            args.branch,
            authorization,
            target_branch=args.target,
            strategy=MergeStrategy(args.strategy) if args.strategy else None,
        )


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    cfg = _settings_for(args, settings or default_settings)
    setup_logging(cfg.log_level, cfg.log_json)

    if args.command == "classify":
        if args.logfile == "-":
            text = sys.stdin.read()
        else:
            text = Path(args.logfile).read_text(encoding="utf-8", errors="replace")
        print(classify(text).model_dump_json(indent=2))
        return 0

    if args.command == "show":
        store_dir = args.store_dir or cfg.context_store_dir
        if not store_dir:
            parser.error("show needs --store-dir or MERGEGATE_CONTEXT_STORE_DIR")
        try:
            context = JsonFileContextStore(store_dir).load(args.attempt_id)
        except ContextNotFound:
            print(f"Unknown merge attempt: {args.attempt_id}", file=sys.stderr)
            return EXIT_USAGE
        print(context.model_dump_json(indent=2))
        return 0

    try:
        check_repository(args.repo, cfg)
    except WorkspaceMismatch as e:
        print(f"Refused: {e.reason}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "force-merge":
        try:
            authorization = OverrideAuthorization(
                authorized_by=args.authorized_by, justification=args.justification
            )
        except ValidationError as e:
            parser.error(f"invalid authorization: {e.errors()[0]['msg']}")
        try:
            decision = asyncio.run(_run_force_merge(args, cfg, authorization))
        except OverrideNotAuthorized as e:
            print(f"Force-merge refused: {e.reason}", file=sys.stderr)
            return EXIT_USAGE
        _print_decision(decision)
        return EXIT_APPROVED if decision.approved else EXIT_ABORTED

    decision = asyncio.run(_run_merge(args, cfg))
    _print_decision(decision)
    return EXIT_APPROVED if decision.approved else EXIT_ABORTED


if __name__ == "__main__":
    raise SystemExit(main())
