"""CLI entrypoint for the session analysis pipeline."""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from datetime import UTC, datetime
from pathlib import Path

from pcit_pipeline import __version__
from pcit_pipeline.config import Settings
from pcit_pipeline.io import InputFileError, load_json, load_milestone_library, load_transcript_json
from pcit_pipeline.models import build_gateway
from pcit_pipeline.observability import LoggingProvenanceSink, get_langsmith_status
from pcit_pipeline.pipeline import (
    PipelineOrchestrator,
    RecordingInput,
    build_status_report,
    score_tag_counts,
)
from pcit_pipeline.schemas import ChildInfo, Session, SessionMode
from pcit_pipeline.store import JsonFileSessionRepository, SessionNotFoundError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pcit",
        description="Behavioral coding and scoring for parent-child interaction recordings",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/default.yaml",
        help="Path to YAML config file (default: configs/default.yaml)",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Override the session store directory.",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("info", help="Show current configuration")

    analyze_parser = sub.add_parser(
        "analyze",
        help="Create a session from a recording or transcript and run the pipeline.",
    )
    source = analyze_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--audio", type=str, help="Path to an audio recording.")
    source.add_argument(
        "--transcript",
        type=str,
        help="Path to a diarized transcript JSON ({speaker, text, start, end} items).",
    )
    analyze_parser.add_argument(
        "--mode",
        choices=[mode.value for mode in SessionMode],
        default=SessionMode.CDI.value,
        help="Session mode (default: CDI).",
    )
    analyze_parser.add_argument("--session-id", type=str, default=None)
    analyze_parser.add_argument("--child-id", type=str, default=None)
    analyze_parser.add_argument("--child-name", type=str, default=None)
    analyze_parser.add_argument("--child-age-months", type=int, default=None)
    analyze_parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Recording duration in seconds.",
    )
    analyze_parser.add_argument("--json", action="store_true", help="Print the status report as JSON.")

    status_parser = sub.add_parser("status", help="Show the analysis status of a session.")
    status_parser.add_argument("--session-id", type=str, required=True)
    status_parser.add_argument(
        "--with-transcript",
        action="store_true",
        help="Include the coded transcript in the report.",
    )

    score_parser = sub.add_parser("score", help="Score a tag-count map without running the pipeline.")
    score_parser.add_argument(
        "--mode",
        choices=[mode.value for mode in SessionMode],
        default=SessionMode.CDI.value,
    )
    score_parser.add_argument(
        "--counts",
        type=str,
        required=True,
        help="Inline JSON object or path to a JSON file mapping tag keys to counts.",
    )

    sub.add_parser("sweep", help="Fail PROCESSING sessions that have gone stale.")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_repository(settings: Settings) -> JsonFileSessionRepository:
    library = []
    if settings.milestone_library_path.exists():
        library = load_milestone_library(settings.milestone_library_path)
    else:
        logger.info("No milestone library at %s; milestone detection disabled.", settings.milestone_library_path)
    return JsonFileSessionRepository(settings.data_dir, milestone_library=library)


def parse_counts_argument(value: str) -> dict:
    """Read a counts map from inline JSON or a JSON file path."""

    candidate = Path(value)
    if candidate.suffix == ".json" and candidate.exists():
        payload = load_json(candidate)
    else:
        payload = json.loads(value)
    if not isinstance(payload, dict):
        raise ValueError("Counts must be a JSON object mapping tag keys to integers.")
    return payload


def cmd_info(settings: Settings) -> None:
    langsmith = get_langsmith_status()
    print(f"pcit v{__version__}")
    print(f"  OpenAI model:       {settings.openai_model}")
    print(f"  Effective model:    {settings.resolved_openai_model()}")
    print(f"  Feedback model:     {settings.resolved_feedback_model()}")
    print(f"  OpenAI base URL:    {settings.resolved_openai_base_url() or '(default OpenAI)'}")
    print(f"  Transcription:      {settings.transcription_provider}")
    print(f"  Client retries:     {settings.client_max_retries}")
    print(f"  Backoff base:       {settings.client_backoff_base}")
    print(f"  Request timeout:    {settings.request_timeout_seconds}s")
    print(f"  Stage attempts:     {settings.stage_max_attempts}")
    print(f"  Stage delays:       {settings.stage_retry_delays}")
    print(f"  Stale after:        {settings.processing_stale_after_seconds}s")
    print(f"  Role threshold:     {settings.role_confidence_threshold}")
    print(f"  Coding batch size:  {settings.coding_batch_size}")
    print(f"  LangSmith tracing:  {langsmith['enabled']}")
    print(f"  Data dir:           {settings.data_dir}")
    print(f"  Milestone library:  {settings.milestone_library_path}")


async def _analyze(settings: Settings, args: argparse.Namespace) -> dict:
    repository = build_repository(settings)

    if args.audio:
        audio_path = Path(args.audio)
        if not audio_path.exists():
            raise InputFileError(f"Audio file does not exist: {audio_path}")
        recording = RecordingInput(audio=audio_path.read_bytes(), filename=audio_path.name)
    else:
        recording = RecordingInput(segments=load_transcript_json(args.transcript))

    if args.child_id and (args.child_name or args.child_age_months is not None):
        child = await repository.get_child(args.child_id) or ChildInfo(child_id=args.child_id)
        updates = {}
        if args.child_name:
            updates["name"] = args.child_name
        if args.child_age_months is not None:
            updates["age_months"] = args.child_age_months
        await repository.save_child(child.model_copy(update=updates))

    now = datetime.now(UTC)
    session = await repository.create_session(
        Session(
            session_id=args.session_id or uuid.uuid4().hex,
            mode=SessionMode(args.mode),
            child_id=args.child_id,
            duration_seconds=args.duration,
            created_at=now,
            updated_at=now,
        )
    )
    print(f"Session {session.session_id} ({session.mode}) created; analyzing...")

    gateway = build_gateway(settings, provenance_sink=LoggingProvenanceSink())
    orchestrator = PipelineOrchestrator(
        repository=repository,
        gateway=gateway,
        settings=settings,
    )
    try:
        finished = await orchestrator.run(session.session_id, recording)
    finally:
        await orchestrator.shutdown()
        await gateway.aclose()
    utterances = await repository.get_utterances(session.session_id)
    return build_status_report(finished, utterances)


def _print_report(report: dict, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report, indent=2, ensure_ascii=True))
        return
    print(f"Status: {report['status']}")
    if "error" in report:
        print(f"  Error: {report['error']}")
    if "score" in report:
        print(f"  Score:  {report['score']} (passed={report.get('passed')})")
        for key, value in report.get("tagCounts", {}).items():
            print(f"    {key:<20} {value}")
    for key in ("competencyAnalysis", "coachingCards", "developmentalObservation", "milestoneCelebrations"):
        if key in report:
            print(f"  {key}: present")


def cmd_analyze(settings: Settings, args: argparse.Namespace) -> None:
    try:
        report = asyncio.run(_analyze(settings, args))
    except (InputFileError, ValueError) as exc:
        print(f"Analyze failed: {exc}")
        sys.exit(1)
    _print_report(report, as_json=args.json)
    if report["status"] != "completed":
        sys.exit(1)


async def _status(settings: Settings, session_id: str, with_transcript: bool) -> dict:
    repository = build_repository(settings)
    orchestrator = PipelineOrchestrator(
        repository=repository,
        settings=settings,
    )
    session = await orchestrator.get_status(session_id)
    utterances = await repository.get_utterances(session_id) if with_transcript else None
    return build_status_report(session, utterances)


def cmd_status(settings: Settings, args: argparse.Namespace) -> None:
    try:
        report = asyncio.run(_status(settings, args.session_id, args.with_transcript))
    except SessionNotFoundError:
        print(f"Session not found: {args.session_id}")
        sys.exit(1)
    print(json.dumps(report, indent=2, ensure_ascii=True))


def cmd_score(args: argparse.Namespace) -> None:
    try:
        counts = parse_counts_argument(args.counts)
        result = score_tag_counts(args.mode, counts)
    except (ValueError, TypeError) as exc:
        print(f"Score failed: {exc}")
        sys.exit(1)
    print(json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=True))


async def _sweep(settings: Settings) -> list[str]:
    repository = build_repository(settings)
    orchestrator = PipelineOrchestrator(
        repository=repository,
        settings=settings,
    )
    return await orchestrator.sweep_stale_sessions()


def cmd_sweep(settings: Settings) -> None:
    expired = asyncio.run(_sweep(settings))
    print(f"Stale sessions failed: {len(expired)}")
    for session_id in expired:
        print(f"  - {session_id}")


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    overrides = {"data_dir": Path(args.data_dir)} if args.data_dir else {}
    settings = Settings.from_yaml(args.config, **overrides)
    configure_logging(settings.log_level)

    if args.command == "info":
        cmd_info(settings)
    elif args.command == "analyze":
        cmd_analyze(settings, args)
    elif args.command == "status":
        cmd_status(settings, args)
    elif args.command == "score":
        cmd_score(args)
    elif args.command == "sweep":
        cmd_sweep(settings)
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
