"""
screen-recap v0.1

Commands:
  summarize <video>          Summarize a finished recording: sample frames,
                             describe each with a vision model, merge into
                             one summary saved next to the video.
  watch                      Sample the live screen until Ctrl+C (or
                             --duration), then summarize what happened.
  models                     List the vision models the provider offers.
  check                      Verify API key and endpoint.
  show <video>               Print the saved summary of a recording.
  summaries [dir]            List saved summaries in a directory.

Examples:
  python main.py summarize ~/Videos/demo.mp4
  python main.py summarize demo.mp4 --provider siliconflow --model Qwen/Qwen2.5-VL-72B-Instruct
  python main.py watch --duration 120 --region 1280x720+0+0
  python main.py watch --video ~/Videos/now-recording.mp4
  python main.py models --provider glm
  python main.py summaries ~/Videos
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv
load_dotenv(Path(__file__).parent / ".env")

from config import ConfigError, SummaryConfig
from frame_extractor import CaptureRegion
from pipeline import SummaryPipeline
from providers import PROVIDERS, AnalysisError, check_connection, list_models
from session import list_summaries, load_summary, save_summary, summary_path


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_config(args) -> SummaryConfig:
    try:
        return SummaryConfig.from_env(
            provider=args.provider,
            model=args.model,
            base_url=args.base_url,
        ).validate()
    except ConfigError as e:
        print(f"ERROR: {e}")
        print("Set RECAP_PROVIDER, RECAP_API_KEY and RECAP_MODEL (or pass --provider/--model).")
        sys.exit(1)


def print_progress(status: str, percent: int | None) -> None:
    marker = f"{percent:3d}%" if percent is not None else " ..."
    print(f"  [{marker}] {status}")


def print_frame(result) -> None:
    if result.success:
        text = result.description.replace("\n", " ")
        print(f"    ✓ {result.timestamp:7.1f}s  {text[:70]}{'…' if len(text) > 70 else ''}")
    else:
        print(f"    ✗ {result.timestamp:7.1f}s  {result.error}")


def print_outcome(outcome, saved_to: Path | None = None) -> None:
    print(f"\n{'=' * 44}")
    if outcome.success:
        print(f"  DONE — {outcome.message}")
        if saved_to:
            print(f"  {saved_to}")
        print(f"{'=' * 44}\n")
        print(outcome.text)
        print()
    else:
        print(f"  FAILED — {outcome.message}")
        print(f"{'=' * 44}\n")


# ── summarize ─────────────────────────────────────────────────────────────────

def cmd_summarize(args):
    video = Path(args.video).expanduser()
    if not video.is_file():
        print(f"ERROR: Video not found: {video}")
        sys.exit(1)

    sidecar = summary_path(video)
    if sidecar.exists() and not args.force:
        print(f"Summary already exists: {sidecar}")
        print(f"Use --force to re-summarize, or: python main.py show {video}")
        return

    config = build_config(args)

    print(f"\n{'=' * 44}")
    print(f"  screen-recap summarize")
    print(f"  Video    : {video.name}")
    print(f"  Provider : {config.provider}")
    print(f"  Model    : {config.model}")
    print(f"{'=' * 44}\n")

    pipeline = SummaryPipeline(config, on_frame_analyzed=print_frame, on_progress=print_progress)
    outcome = asyncio.run(pipeline.summarize_video(video))

    saved = save_summary(video, outcome.text, config.model) if outcome.success else None
    print_outcome(outcome, saved)
    if not outcome.success:
        sys.exit(1)


# ── watch ─────────────────────────────────────────────────────────────────────

async def _watch(args, config: SummaryConfig):
    region = CaptureRegion.parse(args.region) if args.region else None
    pipeline = SummaryPipeline(
        config,
        frames_dir=args.frames_dir,
        on_frame_analyzed=print_frame,
        on_progress=print_progress,
        region=region,
        display=args.display,
    )

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_requested.set)
        handles_sigint = True
    except NotImplementedError:
        # Windows event loops: Ctrl+C arrives as KeyboardInterrupt instead.
        handles_sigint = False

    await pipeline.start()
    waiter = asyncio.create_task(stop_requested.wait())
    await asyncio.wait({waiter}, timeout=args.duration)
    waiter.cancel()

    print("\n  Stopping capture. Press Ctrl+C again to cancel the summary.\n")
    if handles_sigint:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(pipeline.cancel()))
    try:
        return await pipeline.stop()
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)


def cmd_watch(args):
    config = build_config(args)

    print(f"\n{'=' * 44}")
    print(f"  screen-recap watch")
    print(f"  Provider : {config.provider}")
    print(f"  Model    : {config.model}")
    if args.region:
        print(f"  Region   : {args.region}")
    if args.duration:
        print(f"  Duration : {args.duration:.0f}s")
    else:
        print(f"  Stop     : Ctrl+C")
    print(f"{'=' * 44}\n")

    try:
        outcome = asyncio.run(_watch(args, config))
    except ValueError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    saved = None
    if outcome.success and args.video:
        saved = save_summary(Path(args.video).expanduser(), outcome.text, config.model)
    print_outcome(outcome, saved)
    if not outcome.success:
        sys.exit(1)


# ── models / check ────────────────────────────────────────────────────────────

def cmd_models(args):
    config = SummaryConfig.from_env(provider=args.provider, base_url=args.base_url)
    try:
        models, message = asyncio.run(list_models(config))
    except (ConfigError, AnalysisError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    print(f"\n{message}:\n")
    for model_id in models:
        print(f"  {model_id}")
    print()


def cmd_check(args):
    config = SummaryConfig.from_env(provider=args.provider, base_url=args.base_url)
    ok, message = asyncio.run(check_connection(config))
    print(f"{'OK' if ok else 'FAILED'}: {message}")
    if not ok:
        sys.exit(1)


# ── show / summaries ──────────────────────────────────────────────────────────

def cmd_show(args):
    try:
        data = load_summary(Path(args.video).expanduser())
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    print(f"\n{data['source']}  ·  {data['generated']}  ·  {data['model']}\n")
    print(data["summary"])
    print()


def cmd_summaries(args):
    directory = Path(args.directory).expanduser()
    summaries = list_summaries(directory)
    if not summaries:
        print(f"No summaries found in {directory}. Run: python main.py summarize <video>")
        return

    print(f"\n{'─' * 72}")
    print(f"  {'SOURCE':<30} {'WORDS':>5}  {'GENERATED':<25}  MODEL")
    print(f"{'─' * 72}")
    for s in summaries:
        source = s["source"][:28] + ("…" if len(s["source"]) > 28 else "")
        print(f"  {source:<30} {s['words']:>5}  {s['generated']:<25}  {s['model']}")
    print(f"{'─' * 72}\n")


# ── CLI ───────────────────────────────────────────────────────────────────────

def _add_provider_args(p, with_model=True):
    p.add_argument("--provider", choices=sorted(PROVIDERS),
                   help="AI provider (default: $RECAP_PROVIDER or openai)")
    if with_model:
        p.add_argument("--model", help="Vision model id (default: $RECAP_MODEL)")
    p.add_argument("--base-url", help="Override the provider's API base URL")


def main():
    parser = argparse.ArgumentParser(
        prog="screen-recap",
        description="Summarize screen recordings with a vision model.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    # summarize
    p_sum = sub.add_parser("summarize", help="Summarize a recorded video")
    p_sum.add_argument("video", help="Path to the recording")
    _add_provider_args(p_sum)
    p_sum.add_argument("--force", action="store_true",
                       help="Re-summarize even if a summary already exists")

    # watch
    p_watch = sub.add_parser("watch", help="Sample the live screen and summarize it")
    _add_provider_args(p_watch)
    p_watch.add_argument("--duration", type=float,
                         help="Stop after this many seconds (default: until Ctrl+C)")
    p_watch.add_argument("--region", metavar="WxH+X+Y",
                         help="Capture only this screen region, e.g. 1280x720+0+0")
    p_watch.add_argument("--display", help="Capture device/display (ffmpeg input name)")
    p_watch.add_argument("--frames-dir", type=Path,
                         help="Write captured frames here instead of a temp directory")
    p_watch.add_argument("--video", metavar="PATH",
                         help="Recording this session belongs to; the summary is saved next to it")

    # models
    p_models = sub.add_parser("models", help="List vision models offered by the provider")
    _add_provider_args(p_models, with_model=False)

    # check
    p_check = sub.add_parser("check", help="Verify API key and endpoint")
    _add_provider_args(p_check, with_model=False)

    # show
    p_show = sub.add_parser("show", help="Print the saved summary of a recording")
    p_show.add_argument("video", help="Path to the recording")

    # summaries
    p_list = sub.add_parser("summaries", help="List saved summaries")
    p_list.add_argument("directory", nargs="?", default=".", help="Directory to scan (default: .)")

    args = parser.parse_args()
    setup_logging(args.verbose)

    commands = {
        "summarize": cmd_summarize,
        "watch": cmd_watch,
        "models": cmd_models,
        "check": cmd_check,
        "show": cmd_show,
        "summaries": cmd_summaries,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return
    handler(args)


if __name__ == "__main__":
    main()
