#!/usr/bin/env python3
"""
ct2aria CLI Interface
=====================
Send every file of one or more ctfile shares to an aria2 daemon.

Features:
- Bounded concurrency with re-walk on failure
- Resume from the completion journal
- Live progress monitoring
"""

import argparse
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

from aria2_client import DEFAULT_ENDPOINT, Aria2Client
from ct2aria_core import (
    DEFAULT_CONCURRENCY,
    DEFAULT_RATE_LIMIT,
    STATE_DB_NAME,
    CompletionJournal,
    ConfigError,
    Ct2AriaCore,
    Ct2AriaError,
    DispatchConfig,
    EventLog,
    RunReport,
)
from ctfile_client import CtfileClient

DEBUG_LOG_NAME = "ct2aria_debug.log"


class Ct2AriaCLI:
    """Command-line interface for ct2aria."""

    def __init__(self):
        self.core = None
        self.running = False
        self.last_stats = {}

    def _install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        print("\n🛑 Shutdown signal received, stopping gracefully...")
        if self.core:
            self.core.stop()
        self.running = False

    def _print_header(self):
        print("=" * 70)
        print("🔥 ct2aria - ctfile to aria2 dispatcher")
        print("=" * 70)
        print()

    def _print_stats(self, stats: dict):
        """Print current statistics."""
        if self.last_stats:
            print("\033[F" * 4, end="")

        print(f"📊 Done: {stats['files_done']} files | Submitted: {stats['submitted']} "
              f"| Failed: {stats['failed']} | Removed: {stats['removed']}\033[K")
        print(f"👷 Workers: {stats['in_flight']}/{stats['workers']} busy\033[K")
        print(f"📦 Queue: {stats['queue_depth']} pending\033[K")
        print(f"🔁 Re-walks: {stats['rewalks']} | Roots: {stats['roots_seen']}\033[K")

        self.last_stats = stats

    def _monitor_progress(self, verbose: bool = False):
        """Poll the engine until the scanner is done."""
        print("\n📡 Monitoring progress (Ctrl+C to stop)...\n")

        last_log_index = 0
        while self.running:
            stats = self.core.get_stats()
            if verbose:
                logs, last_log_index = self.core.get_logs(last_log_index)
                for line in logs:
                    print(f"\033[K{line}")
                self.last_stats = {}
            self._print_stats(stats)

            if not stats['scanner_active']:
                self.running = False
                break
            time.sleep(0.5)

    def _print_report(self, report: Optional[RunReport]) -> int:
        print("\n" + "=" * 70)
        if report is None:
            print("⏸ STOPPED")
            print("=" * 70)
            return 1
        print("✅ RUN COMPLETE" if report.ok else "⚠️  RUN FINISHED WITH ERRORS")
        print("=" * 70)
        for root in report.roots:
            print(f"{root.root_id}: {root.state} | done: {root.completed} | "
                  f"failed: {len(root.failed_paths)} | re-walks: {root.rewalks}")
            for path in root.failed_paths:
                print(f"   ✗ {path}")
            if root.error is not None:
                print(f"   ❌ {root.error}")
        print("=" * 70)
        return 0 if report.ok else 1

    def _build_core(self, args) -> Ct2AriaCore:
        output = Path(args.output) if args.output else Path.cwd()
        config = DispatchConfig(
            concurrency=args.concurrent,
            workers=args.workers,
            output_dir=args.output,
            rate_limit=args.rate_limit,
            user_agent=args.user_agent,
        ).validate()

        ctfile = CtfileClient()
        if args.cookie:
            ctfile.set_cookies(args.cookie)

        event_log = EventLog(log_file=str(Path.cwd() / DEBUG_LOG_NAME))
        journal = CompletionJournal(str(output / STATE_DB_NAME), event_log=event_log)
        return Ct2AriaCore(
            config,
            walk=ctfile.walk,
            resolve_uris=ctfile.resolve_uris,
            engine=Aria2Client(args.aria2_endpoint, args.aria2_token),
            event_log=event_log,
            journal=journal,
        )

    def _run(self, args, roots: List[str], resume: bool) -> int:
        print("⚙️  Initializing engine...")
        print(f"   aria2 endpoint: {args.aria2_endpoint}")
        print(f"   Output directory: {args.output or '(aria2 default)'}")
        print(f"   Concurrent: {args.concurrent}")
        print(f"   Rate limit: {args.rate_limit}/s")
        print(f"   Auth: {'✓ pub cookie' if args.cookie else 'None'}")

        self.core = self._build_core(args)
        self._install_signal_handlers()

        print(f"\n🚀 {'Resuming' if resume else 'Starting'}: {len(roots)} roots")
        self.core.start(roots, resume=resume)
        self.running = True
        self._monitor_progress(verbose=args.verbose)

        try:
            report = self.core.wait()
        except Ct2AriaError as e:
            print(f"\n❌ {e}")
            return 1
        return self._print_report(report)

    def start(self, args) -> int:
        """Start a new run."""
        self._print_header()
        if not args.roots:
            print("❌ Error: no input")
            return 1
        return self._run(args, args.roots, resume=False)

    def resume(self, args) -> int:
        """Resume using the completion journal in the output directory."""
        self._print_header()
        db_path = Path(args.output or ".") / STATE_DB_NAME
        if not db_path.exists():
            print("❌ Error: No existing job found in this directory")
            print("   Tip: Use 'start' to begin a new job")
            return 1

        roots = args.roots or CompletionJournal(str(db_path)).roots()
        if not roots:
            print("❌ Error: no input")
            return 1
        print(f"✓ Found existing journal, {len(roots)} roots")
        return self._run(args, roots, resume=True)

    def status(self, args) -> int:
        """Show the journal of an existing job."""
        self._print_header()
        db_path = Path(args.output or ".") / STATE_DB_NAME
        if not db_path.exists():
            print("❌ No job found in this directory")
            return 1

        summary = CompletionJournal(str(db_path)).summary()
        print(f"📊 Job Status: {args.output or '.'}")
        print("=" * 70)
        print(f"Roots: {len(summary)}")
        for root_id, counts in sorted(summary.items()):
            print(f"{root_id}: ✅ {counts.get('done', 0)} done | ❌ {counts.get('failed', 0)} failed")
        print("=" * 70)

        if any(counts.get('failed', 0) for counts in summary.values()):
            print("\n💡 Tip: Use 'ct2aria resume' to retry failed files")
        return 0


def _add_run_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('roots', nargs='*', help='Share ids (passcode@id for protected shares)')
    parser.add_argument('--cookie', default='', help='pub cookie of ctfile')
    parser.add_argument('--aria2-endpoint', default=DEFAULT_ENDPOINT, help='endpoint of aria2 rpc')
    parser.add_argument('--aria2-token', default='', help='token of aria2 rpc')
    parser.add_argument('--aria2-output', '--output', dest='output', default='', help='output path')
    parser.add_argument('--concurrent', type=int, default=DEFAULT_CONCURRENCY,
                        help=f'concurrent downloads (default: {DEFAULT_CONCURRENCY})')
    parser.add_argument('--workers', type=int, default=None, help='worker loops (default: --concurrent)')
    parser.add_argument('--rate-limit', type=float, default=DEFAULT_RATE_LIMIT,
                        help=f'url resolutions per second (default: {DEFAULT_RATE_LIMIT:g})')
    parser.add_argument('--user-agent', default=None, help='user agent forwarded to aria2')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show detailed logs')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ct2aria",
        description="ct2aria - send ctfile shares to aria2",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Download two shares with 8 parallel jobs
  ct2aria start 11449240-32213899-2b9439 abcd@1234-5678 --cookie $PUB --concurrent 8

  # Resume after an interruption, skipping finished files
  ct2aria resume --cookie $PUB --output /data/ct

  # Check job status
  ct2aria status --output /data/ct
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    start_parser = subparsers.add_parser('start', help='Start a new run')
    _add_run_arguments(start_parser)

    resume_parser = subparsers.add_parser('resume', help='Resume from the journal')
    _add_run_arguments(resume_parser)

    status_parser = subparsers.add_parser('status', help='Show job status')
    status_parser.add_argument('--output', default='', help='Output directory with existing job')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    cli = Ct2AriaCLI()
    try:
        if args.command == 'start':
            return cli.start(args)
        if args.command == 'resume':
            return cli.resume(args)
        return cli.status(args)
    except ConfigError as e:
        print(f"❌ Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
