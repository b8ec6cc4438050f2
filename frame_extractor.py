import asyncio
import base64
import io
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from PIL import Image

from config import IMAGE_MAX_WIDTH, INTERVAL_SWITCH_THRESHOLD, JPEG_QUALITY, LONG_INTERVAL, SHORT_INTERVAL

log = logging.getLogger(__name__)

# A single-frame grab should be near instant; anything slower is a hung device.
CAPTURE_TIMEOUT = 15.0


class CaptureError(RuntimeError):
    """ffmpeg could not grab or extract a frame."""


@dataclass(frozen=True)
class CaptureRegion:
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def parse(cls, value: str) -> "CaptureRegion":
        """Parse 'WIDTHxHEIGHT+X+Y', e.g. '1280x720+0+0'."""
        try:
            size, x, y = value.split("+")
            width, height = size.lower().split("x")
            region = cls(int(x), int(y), int(width), int(height))
        except ValueError:
            raise ValueError(f"Invalid region '{value}', expected WIDTHxHEIGHT+X+Y") from None
        if region.width <= 0 or region.height <= 0:
            raise ValueError(f"Invalid region '{value}', size must be positive")
        return region


def find_tool(name: str) -> str:
    """Return the path of ffmpeg/ffprobe, or raise CaptureError if it is not installed."""
    path = shutil.which(name)
    if path is None:
        raise CaptureError(f"{name} not found in PATH. Install FFmpeg first.")
    return path


# ── Live capture ──────────────────────────────────────────────────────────────

def screen_grab_command(
    output_path: Path,
    region: CaptureRegion | None = None,
    display: str | None = None,
    ffmpeg: str = "ffmpeg",
) -> list[str]:
    """Build the ffmpeg command that grabs one still frame of the screen."""
    cmd = [ffmpeg, "-hide_banner", "-loglevel", "error"]

    if sys.platform.startswith("win"):
        cmd += ["-f", "gdigrab"]
        if region:
            cmd += [
                "-offset_x", str(region.x),
                "-offset_y", str(region.y),
                "-video_size", f"{region.width}x{region.height}",
            ]
        cmd += ["-i", display or "desktop"]
    elif sys.platform == "darwin":
        cmd += ["-f", "avfoundation", "-i", display or "1"]
        if region:
            cmd += ["-vf", f"crop={region.width}:{region.height}:{region.x}:{region.y}"]
    else:
        screen = display or os.environ.get("DISPLAY") or ":0.0"
        cmd += ["-f", "x11grab"]
        if region:
            cmd += ["-video_size", f"{region.width}x{region.height}"]
            screen = f"{screen}+{region.x},{region.y}"
        cmd += ["-i", screen]

    cmd += ["-frames:v", "1", "-q:v", "2", "-y", str(output_path)]
    return cmd


async def capture_screen_frame(
    output_path: Path,
    region: CaptureRegion | None = None,
    display: str | None = None,
    timeout: float = CAPTURE_TIMEOUT,
) -> Path:
    """
    Grab one frame of the screen into `output_path` (JPEG).
    Raises CaptureError on any failure; the process is killed if we are cancelled.
    """
    cmd = screen_grab_command(output_path, region, display, ffmpeg=find_tool("ffmpeg"))
    await _run_tool(cmd, timeout)
    if not output_path.exists():
        raise CaptureError(f"ffmpeg exited cleanly but did not write {output_path.name}")
    return output_path


async def _run_tool(cmd: list[str], timeout: float | None) -> None:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CaptureError(f"Could not start {Path(cmd[0]).name}: {e}") from e

    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CaptureError(f"{Path(cmd[0]).name} timed out after {timeout:.0f}s") from None
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    if proc.returncode != 0:
        tail = stderr.decode("utf-8", errors="replace").strip().splitlines()[-3:]
        raise CaptureError(f"{Path(cmd[0]).name} failed (exit {proc.returncode}): {' | '.join(tail)}")


# ── Recorded video ────────────────────────────────────────────────────────────

def get_video_duration(video_path: Path) -> float:
    """Return video duration in seconds using ffprobe. 0.0 if unknown."""
    ffprobe = shutil.which("ffprobe")
    if ffprobe is None:
        log.warning("ffprobe not found; duration unknown for %s", video_path)
        return 0.0
    cmd = [
        ffprobe, "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(video_path),
    ]
    result = subprocess.run(cmd, capture_output=True, text=True)
    try:
        return float(result.stdout.strip())
    except ValueError:
        return 0.0


def compute_sampling_interval(duration: float) -> float:
    """
    Fixed sampling interval for an already-recorded video.
    Unknown or non-positive durations fall back to the long interval.
    """
    if duration <= 0:
        return LONG_INTERVAL
    if duration < INTERVAL_SWITCH_THRESHOLD:
        return SHORT_INTERVAL
    return LONG_INTERVAL


async def extract_frames_uniform(
    video_path: Path,
    frames_dir: Path,
    interval: float,
    timeout: float | None = None,
) -> list[dict]:
    """
    Extract one frame every `interval` seconds across the whole video in a
    single ffmpeg pass.
    Returns list of dicts: [{'timestamp': float, 'path': str}, ...] in time order.
    """
    frames_dir.mkdir(parents=True, exist_ok=True)
    for stale in frames_dir.glob("frame_*.jpg"):
        stale.unlink()

    cmd = [
        find_tool("ffmpeg"), "-hide_banner", "-loglevel", "error",
        "-i", str(video_path),
        "-vf", f"fps=1/{interval:g}",
        "-q:v", "2",
        "-f", "image2",
        str(frames_dir / "frame_%04d.jpg"),
    ]
    log.debug("Extracting frames: %s", " ".join(cmd))
    await _run_tool(cmd, timeout)

    paths = sorted(frames_dir.glob("frame_*.jpg"))
    frames = [{"timestamp": round(i * interval, 3), "path": str(p)} for i, p in enumerate(paths)]
    log.info("Extracted %d frames every %.1fs from %s", len(frames), interval, video_path.name)
    return frames


# ── Encoding ──────────────────────────────────────────────────────────────────

def encode_image(image, max_width: int = IMAGE_MAX_WIDTH) -> str:
    """
    Load a frame (path or raw bytes), downscale it to `max_width` if wider,
    and return it as base64 JPEG. Raises OSError if the image cannot be read.
    """
    source = io.BytesIO(image) if isinstance(image, (bytes, bytearray)) else image
    with Image.open(source) as img:
        img = img.convert("RGB")
        if img.width > max_width:
            ratio = max_width / img.width
            img = img.resize((max_width, int(img.height * ratio)), Image.LANCZOS)
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return base64.standard_b64encode(buf.getvalue()).decode("utf-8")
