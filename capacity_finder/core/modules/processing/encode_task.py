"""
Encode task module for capacity_finder.

This module wraps the external transcoding engine:
- EncodeSettings for codec/rate-control parameters
- Synthetic lavfi source selection per job
- FFmpeg NVENC HLS command building
- EncodeTask interface returning a Popen-like process handle
"""

import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List

from ....utils.logging import get_logger
from .job_queue import Job

logger = get_logger("encode_task")

PLAYLIST_NAME = "playlist.m3u8"
ERROR_LOG_NAME = "error.log"

SYNTHETIC_PATTERNS = [
    "testsrc2",
    "smptebars",
    "mandelbrot=maxiter=100",
    "life=ratio=0.1:death_color=red",
    "plasma",
    "cellauto=rule=30",
    "rgbtestsrc",
    "gradients=speed=1",
]

MOTION_EFFECTS = [
    "",
    ",rotate=angle=t*PI/6:c=black",
    ",scale=1920:1080,scale={width}:{height}",
    ",crop=w=iw*0.9:h=ih*0.9:x=iw*0.05:y=ih*0.05,scale={width}:{height}",
]


@dataclass
class EncodeSettings:
    """Quality/preset parameters handed to every encode of a run."""
    encoder: str = "h264_nvenc"
    preset: str = "p4"
    profile: str = "high"
    cq: int = 36
    bitrate: str = "2M"
    maxrate: str = "3M"
    bufsize: str = "6M"
    gop: int = 60
    hls_time: int = 6
    resolution: str = "1280x720"
    frame_rate: int = 30

    @property
    def dimensions(self) -> tuple:
        width, height = self.resolution.lower().split("x")
        return int(width), int(height)


def get_synthetic_source(job_index: int, settings: EncodeSettings) -> str:
    """
    Pick a lavfi source graph for a job.

    Patterns and motion effects cycle independently with the job index so
    neighbouring jobs encode visibly different content.
    """
    width, height = settings.dimensions
    pattern = SYNTHETIC_PATTERNS[job_index % len(SYNTHETIC_PATTERNS)]
    effect = MOTION_EFFECTS[job_index % len(MOTION_EFFECTS)].format(width=width, height=height)

    name, _, options = pattern.partition("=")
    base_options = f"size={settings.resolution}:rate={settings.frame_rate}"
    if options:
        base_options = f"{base_options}:{options}"
    return f"{name}={base_options}{effect}"


def build_encode_cmd(source: str, duration: float, sink: Path,
                     settings: EncodeSettings, ffmpeg: str = "ffmpeg") -> List[str]:
    """Build the FFmpeg command encoding a lavfi source to an HLS playlist."""
    cmd = [ffmpeg, "-hide_banner", "-loglevel", "error", "-y"]

    # Input
    cmd.extend(["-f", "lavfi", "-i", source, "-t", f"{duration:g}"])

    # Video encoding
    cmd.extend([
        "-c:v", settings.encoder,
        "-preset", settings.preset,
        "-profile:v", settings.profile,
        "-rc", "vbr",
        "-cq", str(settings.cq),
        "-b:v", settings.bitrate,
        "-maxrate", settings.maxrate,
        "-bufsize", settings.bufsize,
        "-g", str(settings.gop),
        "-an",
    ])

    # HLS output
    cmd.extend([
        "-f", "hls",
        "-hls_time", str(settings.hls_time),
        "-hls_list_size", "0",
        "-hls_playlist_type", "vod",
        "-hls_segment_filename", str(sink / "segment_%05d.ts"),
        str(sink / PLAYLIST_NAME),
    ])
    return cmd


class EncodeTask(ABC):
    """
    Runs one transcoding job.

    launch() must return without waiting for the encode; the returned
    handle offers the subprocess.Popen subset poll/wait/terminate/kill,
    with wait(timeout) raising subprocess.TimeoutExpired on expiry.
    """

    def source_for(self, index: int) -> str:
        """Input description for the job at `index` of a level."""
        return f"job-{index}"

    @abstractmethod
    def launch(self, job: Job, sink: Path):
        """Start encoding `job` into directory `sink` and return its handle."""

    def is_success(self, job: Job, sink: Path, return_code: int) -> bool:
        return return_code == 0


class FFmpegEncodeTask(EncodeTask):
    """EncodeTask backed by an ffmpeg child process per job."""

    def __init__(self, settings: EncodeSettings = None, ffmpeg: str = "ffmpeg"):
        self.settings = settings or EncodeSettings()
        self.ffmpeg = ffmpeg

    def source_for(self, index: int) -> str:
        return get_synthetic_source(index, self.settings)

    def launch(self, job: Job, sink: Path) -> subprocess.Popen:
        sink.mkdir(parents=True, exist_ok=True)
        cmd = build_encode_cmd(job.source, job.target_duration, sink, self.settings, self.ffmpeg)
        logger.cmd(" ".join(shlex.quote(c) for c in cmd))

        # The child keeps its own copy of the log descriptor
        with open(sink / ERROR_LOG_NAME, "wb") as err:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=err,
            )

    def is_success(self, job: Job, sink: Path, return_code: int) -> bool:
        # ffmpeg can exit 0 after writing nothing useful
        return return_code == 0 and (sink / PLAYLIST_NAME).exists()
