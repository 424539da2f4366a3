import argparse
import json
import sys
from typing import List, Optional

import pydantic
from tqdm import tqdm

from .config import resolve_config
from .errors import DurableFfmpegError
from .ffmpeg_runner import EncoderProgress
from .jobs import AudioCodec, ContainerFormat, JobOutcome, ProcessingRequest, VideoCodec
from .journal import SQLiteJournal
from .logging_config import configure_logging
from .probe import ProbeRequest
from .service import MediaService

# sysexits.h EX_TEMPFAIL: suspended, run again later
EXIT_SUSPENDED = 75


class _ProgressBar:
    """tqdm bar fed by encoder progress callbacks (seconds of output encoded)."""

    def __init__(self, desc: str):
        self.desc = desc
        self._bar: Optional[tqdm] = None

    def __call__(self, progress: EncoderProgress) -> None:
        if self._bar is None:
            total = round(progress.total_duration_s, 1) if progress.total_duration_s else None
            self._bar = tqdm(total=total, desc=self.desc, unit="s", file=sys.stderr)
        self._bar.n = round(progress.current_time_s, 1)
        self._bar.set_postfix(speed=f"{progress.speed:.2f}x", refresh=False)
        self._bar.refresh()

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()


def _cli_overrides(args: argparse.Namespace) -> dict:
    # Convert args to dict, filtering None
    return {k: v for k, v in vars(args).items() if v is not None}


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="durable-ffmpeg", description="Durable, resumable ffmpeg worker"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # Options shared by everything that touches the journal or working storage
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--journal", type=str, help="Step journal database path")
    common.add_argument("--work-root", type=str, help="Working storage root")
    common.add_argument("--output-root", type=str, help="Default publish directory")
    common.add_argument("--encoder", type=str, help="ffmpeg binary path")
    common.add_argument("--concurrency", type=int, help="Max simultaneous encoder processes")
    common.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )

    # SERVE
    serve_parser = subparsers.add_parser(
        "serve", parents=[common], help="Run the orchestrator-facing HTTP service"
    )
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Listen port")

    # CHECK
    subparsers.add_parser("check", parents=[common], help="Verify encoder, storage and journal")

    # RUN (one request, locally)
    run_parser = subparsers.add_parser(
        "run", parents=[common], help="Process one request locally (resumable by key)"
    )
    run_parser.add_argument("--key", "-k", type=str, required=True, help="Request key")
    run_parser.add_argument("--source", "-s", type=str, required=True, help="Source path or URI")
    run_parser.add_argument(
        "--container", choices=[c.value for c in ContainerFormat], help="Container format"
    )
    run_parser.add_argument("--codec", choices=[c.value for c in VideoCodec], help="Video codec")
    run_parser.add_argument(
        "--audio-codec", choices=[c.value for c in AudioCodec], help="Audio codec"
    )
    run_parser.add_argument("--bitrate", type=str, help="Video bitrate (e.g. 2M)")
    run_parser.add_argument("--crf", type=int, help="Constant quality factor")
    run_parser.add_argument("--preset", type=str, help="Encoder speed preset")
    run_parser.add_argument(
        "--filter", dest="filters", action="append", help="Video filter (repeatable)"
    )
    run_parser.add_argument("--destination", "-d", type=str, help="Publish URI")
    run_parser.add_argument("--no-progress", action="store_true", help="Hide the progress bar")

    # PROBE
    probe_parser = subparsers.add_parser("probe", parents=[common], help="Inspect media with ffprobe")
    probe_parser.add_argument("input", type=str, help="Path or URL")
    probe_parser.add_argument("--key", "-k", type=str, help="Journal the result under this key")

    # JOURNAL subcommands (status, clear)
    journal_parser = subparsers.add_parser("journal", help="Inspect or reset the step journal")
    journal_subparsers = journal_parser.add_subparsers(
        dest="journal_command", help="Journal commands"
    )

    status_parser = journal_subparsers.add_parser("status", help="Show requests or one request's steps")
    status_parser.add_argument("--journal", type=str, help="Step journal database path")
    status_parser.add_argument("--key", "-k", type=str, help="Show steps of this request")

    clear_parser = journal_subparsers.add_parser("clear", help="Forget one request or everything")
    clear_parser.add_argument("--journal", type=str, help="Step journal database path")
    clear_parser.add_argument("--key", "-k", type=str, help="Only this request")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "journal" and args.journal_command is None:
        journal_parser.print_help()
        return 0

    try:
        config = resolve_config(_cli_overrides(args))
    except pydantic.ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2
    configure_logging(config.logging.level, config.logging.format)

    if args.command == "serve":
        import uvicorn

        from .api.main import create_app

        uvicorn.run(
            create_app(config=config),
            host=config.server.host,
            port=config.server.port,
            log_level=config.logging.level.lower(),
        )
        return 0

    if args.command == "journal":
        return _journal_command(args, config.storage.journal_path)

    service = MediaService(config)
    try:
        if args.command == "check":
            return _check(service)
        if args.command == "run":
            return _run(args, service)
        if args.command == "probe":
            return _probe(args, service)
    finally:
        service.shutdown()

    parser.print_help()
    return 0


def _check(service: MediaService) -> int:
    print("Checking dependencies...")
    report = service.health()
    labels = {
        "encoder": f"encoder runs ({report.encoder or 'not found'})",
        "work_root_writable": f"working storage writable ({service.config.storage.work_root})",
        "journal": f"journal reachable ({service.config.storage.journal_path})",
    }
    for name, ok in report.checks.items():
        print(f"{'✅' if ok else '❌'} {labels.get(name, name)}")
    return 0 if report.ready else 1


def _run(args: argparse.Namespace, service: MediaService) -> int:
    output = {
        name: getattr(args, name)
        for name in (
            "container", "codec", "audio_codec", "bitrate", "crf", "preset", "filters", "destination"
        )
        if getattr(args, name) is not None
    }
    try:
        request = ProcessingRequest(key=args.key, source=args.source, output=output)
    except pydantic.ValidationError as e:
        print(f"Invalid request:\n{e}", file=sys.stderr)
        return 2

    bar = None if args.no_progress else _ProgressBar(args.key)
    try:
        result = service.handle(request, wait_s=float("inf"), progress_callback=bar)
    finally:
        if bar is not None:
            bar.close()

    _print_json(result.model_dump(mode="json"))
    if isinstance(result, JobOutcome):
        return 0 if result.succeeded else 1
    print(f"Suspended until {result.resume_after.isoformat()}: {result.reason}", file=sys.stderr)
    return EXIT_SUSPENDED


def _probe(args: argparse.Namespace, service: MediaService) -> int:
    try:
        response = service.probe(ProbeRequest(input=args.input, key=args.key))
    except DurableFfmpegError as e:
        print(f"❌ {e.kind.value}: {e.message}", file=sys.stderr)
        return 1
    _print_json(response.model_dump(mode="json", exclude_none=True))
    return 0


def _journal_command(args: argparse.Namespace, journal_path: str) -> int:
    journal = SQLiteJournal(journal_path)
    try:
        if args.journal_command == "status":
            if args.key:
                steps = journal.list_steps(args.key)
                outcome = journal.get_outcome(args.key)
                print("\n" + "=" * 60)
                print(f"REQUEST {args.key}")
                print("=" * 60)
                if not steps and outcome is None:
                    print("No journal entries.")
                for step in steps:
                    print(f"{step.step_name:<10} {step.status.value:<10} attempts={step.attempts}"
                          f"{'  ' + step.error_kind if step.error_kind else ''}")
                if outcome is not None:
                    print("-" * 60)
                    print(f"Outcome:              {outcome['status']}")
                    if outcome.get("output_descriptor"):
                        print(f"Output:               {outcome['output_descriptor']}")
                    if outcome.get("error_kind"):
                        print(f"Error:                {outcome['error_kind']}: {outcome.get('message')}")
                print("=" * 60)
            else:
                requests = journal.list_requests()
                print("\n" + "=" * 60)
                print("JOURNAL STATUS")
                print("=" * 60)
                for row in requests:
                    print(f"{row['request_key']:<30} {row['outcome_status'] or 'open':<10} "
                          f"steps={row['completed_steps']}")
                print(f"Total:                {len(requests)}")
                print("=" * 60)
            return 0

        if args.journal_command == "clear":
            removed = journal.clear(args.key)
            print(f"Cleared {removed} request(s).")
            return 0
    finally:
        journal.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
