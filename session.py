"""
Summary persistence — writes each summary next to its recording.

  recording.mp4
  recording.summary.txt   ← header (source, generated at, model) + summary text

The header is a few "Key: value" lines, a separator, then the summary.
"""

from datetime import datetime, timezone
from pathlib import Path

SUMMARY_SUFFIX = ".summary.txt"
SEPARATOR = "-" * 40
VIDEO_EXTENSIONS = (".mp4", ".mkv", ".webm", ".mov", ".avi")


def summary_path(video_path: Path) -> Path:
    video_path = Path(video_path)
    return video_path.with_name(video_path.stem + SUMMARY_SUFFIX)


def save_summary(video_path: Path, text: str, model: str, generated_at: datetime | None = None) -> Path:
    """Write the sidecar for `video_path`, replacing any previous one. Returns its path."""
    path = summary_path(video_path)
    generated_at = generated_at or datetime.now(timezone.utc)
    header = [
        f"Source: {Path(video_path).name}",
        f"Generated: {generated_at.isoformat(timespec='seconds')}",
        f"Model: {model}",
        SEPARATOR,
    ]
    path.write_text("\n".join(header) + "\n\n" + text.strip() + "\n", encoding="utf-8")
    return path


def load_summary(video_path: Path) -> dict:
    """
    Read the sidecar for `video_path`.
    Returns {'source', 'generated', 'model', 'summary', 'path'}.
    Raises FileNotFoundError if the video was never summarized.
    """
    path = summary_path(video_path)
    if not path.exists():
        raise FileNotFoundError(
            f"No summary found for '{Path(video_path).name}'.\n"
            f"Run:  screen-recap summarize {video_path}"
        )
    return parse_summary(path.read_text(encoding="utf-8"), path)


def parse_summary(content: str, path: Path | None = None) -> dict:
    head, sep, body = content.partition(SEPARATOR)
    if not sep:
        # No header: the whole file is the summary.
        head, body = "", content

    meta = {}
    for line in head.splitlines():
        key, colon, value = line.partition(":")
        if colon:
            meta[key.strip().lower()] = value.strip()

    return {
        "source": meta.get("source", ""),
        "generated": meta.get("generated", ""),
        "model": meta.get("model", ""),
        "summary": body.strip(),
        "path": str(path) if path else "",
    }


def list_summaries(directory: Path) -> list[dict]:
    """Return metadata for every sidecar in `directory`, newest first."""
    directory = Path(directory)
    if not directory.is_dir():
        return []

    summaries = []
    for sf in directory.glob("*" + SUMMARY_SUFFIX):
        try:
            data = parse_summary(sf.read_text(encoding="utf-8"), sf)
        except (OSError, UnicodeDecodeError):
            continue
        stem = sf.name[: -len(SUMMARY_SUFFIX)]
        video = next((directory / (stem + ext) for ext in VIDEO_EXTENSIONS if (directory / (stem + ext)).exists()), None)
        summaries.append({
            "video":     str(video) if video else "",
            "source":    data["source"] or stem,
            "generated": data["generated"],
            "model":     data["model"],
            "words":     len(data["summary"].split()),
            "path":      str(sf),
        })

    return sorted(summaries, key=lambda x: x["generated"], reverse=True)
