"""
screen-recap MCP server.

Exposes tools to any MCP client:
  summarize_video(path)        — sample, describe and summarize a recording
  get_summary(path)            — return the saved summary of a recording
  list_summaries(directory)    — list saved summaries in a directory
  list_models(provider)        — vision models the configured provider offers

Client config:
    {
      "mcpServers": {
        "screen-recap": {
          "command": "python",
          "args": ["/path/to/screen-recap/server.py"],
          "env": { "RECAP_PROVIDER": "openai", "RECAP_API_KEY": "sk-...", "RECAP_MODEL": "gpt-4o" }
        }
      }
    }
"""

import json
import logging
import sys
from pathlib import Path

# Add project dir to path so imports work when run directly
_HERE = Path(__file__).parent
sys.path.insert(0, str(_HERE))

from dotenv import load_dotenv
load_dotenv(_HERE / ".env")

from mcp.server.fastmcp import FastMCP

from config import ConfigError, SummaryConfig
from pipeline import SummaryPipeline
from providers import AnalysisError, list_models as _list_models
from session import list_summaries as _list_summaries, load_summary, save_summary, summary_path

# stdout carries the MCP protocol; logs go to stderr.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(message)s",
    stream=sys.stderr,
)
logging.getLogger("httpx").setLevel(logging.WARNING)

mcp = FastMCP("screen-recap")


@mcp.tool()
async def summarize_video(path: str, force: bool = False, model: str = "") -> str:
    """
    Summarize a screen recording: frames are sampled (every 2s for clips
    under 10s, every 10s otherwise), each is described by a vision model,
    and the descriptions are merged into one chronological summary.
    Slow (one model request per frame) and uses API credits.

    The summary is saved next to the video as <name>.summary.txt; if one
    already exists it is returned unless force=True.

    Args:
        path: Path to the video file.
        force: Re-summarize even if a summary already exists.
        model: Override the configured vision model.
    """
    video = Path(path).expanduser()
    if not video.is_file():
        return json.dumps({"status": "error", "message": f"Video not found: {video}"})

    if summary_path(video).exists() and not force:
        data = load_summary(video)
        return json.dumps({
            "status": "already_summarized",
            "video": str(video),
            "summary": data["summary"],
            "model": data["model"],
            "generated": data["generated"],
            "message": "Summary already exists. Pass force=true to regenerate it.",
        })

    try:
        config = SummaryConfig.from_env(model=model or None)
        pipeline = SummaryPipeline(config)
        outcome = await pipeline.summarize_video(video)
    except ConfigError as e:
        return json.dumps({"status": "error", "message": str(e)})

    if not outcome.success:
        return json.dumps({"status": "error", "message": outcome.message})

    saved = save_summary(video, outcome.text, config.model)
    results = pipeline.results()
    return json.dumps({
        "status": "success",
        "video": str(video),
        "summary": outcome.text,
        "model": config.model,
        "frames_analyzed": sum(1 for r in results if r.success),
        "frames_failed": sum(1 for r in results if not r.success),
        "saved_to": str(saved),
        "message": outcome.message,
    })


@mcp.tool()
def get_summary(path: str) -> str:
    """
    Return the saved summary of a recording, with the model that wrote it
    and when. Use summarize_video first if none exists.

    Args:
        path: Path to the video file (not the .summary.txt file).
    """
    try:
        data = load_summary(Path(path).expanduser())
    except FileNotFoundError:
        return json.dumps({
            "error": f"No summary found for '{path}'.",
            "hint": "Run summarize_video(path) first.",
        })
    return json.dumps(data)


@mcp.tool()
def list_summaries(directory: str = ".") -> str:
    """
    List recordings in a directory that already have a saved summary.
    Returns source names, models, word counts and generation times, newest first.
    """
    summaries = _list_summaries(Path(directory).expanduser())
    if not summaries:
        return json.dumps({
            "summaries": [],
            "message": "No summaries yet. Run summarize_video(path) to create one.",
        })
    return json.dumps({"summaries": summaries})


@mcp.tool()
async def list_models(provider: str = "") -> str:
    """
    List the vision-capable models of the configured (or given) provider.
    Falls back to every model when none are recognisably vision models, and to
    the provider's known vision models when it cannot list models at all.
    """
    try:
        config = SummaryConfig.from_env(provider=provider or None)
        models, message = await _list_models(config)
    except (ConfigError, AnalysisError) as e:
        return json.dumps({"status": "error", "message": str(e)})
    return json.dumps({"provider": config.provider, "models": models, "message": message})


if __name__ == "__main__":
    mcp.run()
