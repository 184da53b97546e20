import os
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Callable, List, Optional

import ffmpeg
import numpy as np

from errors import FrameCountMismatchError, FrameExtractionError, ProbeError

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_%06d.png"


def frame_name(index: int) -> str:
    """File name of the 1-based frame ``index``"""
    return FRAME_PATTERN % index


def ffmpeg_error_tail(error: Exception, lines: int = 5) -> str:
    """Last few lines of ffmpeg's stderr, for readable error messages"""
    stderr = getattr(error, "stderr", None)
    if not stderr:
        return str(error)
    text = stderr.decode(errors="replace") if isinstance(stderr, bytes) else str(stderr)
    tail = [line for line in text.strip().splitlines() if line.strip()][-lines:]
    return " | ".join(tail) or str(error)


def parse_frame_rate(value) -> float:
    """ffprobe rates come as "30000/1001"; "0/0" means unknown"""
    if not value:
        return 0.0
    try:
        if isinstance(value, str) and "/" in value:
            num, den = value.split("/", 1)
            if float(den) == 0:
                return 0.0
            return float(Fraction(int(num), int(den)))
        return float(value)
    except (ValueError, ZeroDivisionError):
        return 0.0


@dataclass
class MediaInfo:
    width: int
    height: int
    duration: float
    nominal_fps: float
    frame_count: int

    @property
    def expected_frames(self) -> int:
        if self.frame_count > 0:
            return self.frame_count
        return int(round(self.duration * self.nominal_fps))


@dataclass
class ExtractionReport:
    frame_paths: List[str] = field(default_factory=list)
    expected: int = 0

    @property
    def extracted(self) -> int:
        return len(self.frame_paths)

    @property
    def mismatch(self) -> bool:
        return self.extracted != self.expected

    def advisory(self) -> Optional[str]:
        if not self.mismatch:
            return None
        return f"Frame count mismatch: extracted {self.extracted} of {self.expected} frames"


def probe_media(path: str) -> MediaInfo:
    """Read dimensions, duration, nominal fps and decoded frame count of the first video stream"""
    try:
        probe = ffmpeg.probe(path, select_streams="v:0", count_frames=None)
    except ffmpeg.Error as e:
        raise ProbeError(f"Could not read video: {ffmpeg_error_tail(e)}")

    streams = probe.get("streams") or []
    if not streams:
        raise ProbeError("No video stream found in upload")
    stream = streams[0]

    duration = float(stream.get("duration") or probe.get("format", {}).get("duration") or 0)
    nominal_fps = parse_frame_rate(stream.get("r_frame_rate")) or parse_frame_rate(stream.get("avg_frame_rate"))
    frame_count = int(stream.get("nb_read_frames") or stream.get("nb_frames") or 0)

    info = MediaInfo(
        width=int(stream.get("width") or 0),
        height=int(stream.get("height") or 0),
        duration=duration,
        nominal_fps=nominal_fps,
        frame_count=frame_count,
    )
    if info.width <= 0 or info.height <= 0:
        raise ProbeError("Video has no usable dimensions")
    logger.info(
        f"Probed {os.path.basename(path)}: {info.width}x{info.height}, "
        f"{info.duration:.3f}s, {info.nominal_fps:.3f} fps, {info.frame_count} frames"
    )
    return info


def frame_timestamps(count: int, nominal_fps: float) -> List[float]:
    if count <= 0 or nominal_fps <= 0:
        return []
    return [index / nominal_fps for index in range(count)]


def map_in_batches(
    func: Callable,
    items: list,
    batch_size: int,
    on_batch: Optional[Callable[[int, int], None]] = None,
) -> list:
    """Run ``func`` over ``items`` with at most ``batch_size`` in flight.

    Results keep the input order. ``on_batch(done, total)`` runs after each batch.
    """
    batch_size = max(1, int(batch_size))
    results = []
    total = len(items)
    with ThreadPoolExecutor(max_workers=batch_size) as executor:
        for start in range(0, total, batch_size):
            batch = items[start:start + batch_size]
            results.extend(executor.map(func, batch))
            if on_batch:
                on_batch(min(start + batch_size, total), total)
    return results


def extract_frame(source_path: str, dest_path: str, timestamp: float, size: int) -> None:
    """Decode exactly one frame at ``timestamp`` and scale it to at least ``size`` square"""
    (
        ffmpeg
        .input(source_path, ss=f"{timestamp:.6f}")
        .filter("scale", size, size, force_original_aspect_ratio="increase")
        .output(dest_path, **{"frames:v": 1})
        .run(overwrite_output=True, quiet=True)
    )


def extract_frames(
    source_path: str,
    frames_dir: str,
    info: MediaInfo,
    size: int,
    batch_size: int = 10,
    strict: bool = False,
    on_batch: Optional[Callable[[int, int], None]] = None,
) -> ExtractionReport:
    """Extract every frame of ``source_path`` one ffmpeg call at a time.

    Frames land in ``frames_dir`` as a gap-free ``frame_%06d.png`` sequence.
    A count that differs from the probe is logged and reported, and raised
    only when ``strict`` is set.
    """
    os.makedirs(frames_dir, exist_ok=True)
    expected = info.expected_frames
    timestamps = frame_timestamps(expected, info.nominal_fps)

    def _extract(indexed):
        index, timestamp = indexed
        dest = os.path.join(frames_dir, f"raw_{index:06d}.png")
        try:
            extract_frame(source_path, dest, timestamp, size)
        except ffmpeg.Error as e:
            logger.warning(f"Frame {index} at {timestamp:.3f}s failed: {ffmpeg_error_tail(e, 2)}")
            return None
        if not os.path.exists(dest) or os.path.getsize(dest) == 0:
            return None
        return dest

    raw_paths = map_in_batches(_extract, list(enumerate(timestamps, start=1)), batch_size, on_batch)

    report = ExtractionReport(expected=expected)
    for raw_path in raw_paths:
        if raw_path is None:
            continue
        final = os.path.join(frames_dir, frame_name(report.extracted + 1))
        os.replace(raw_path, final)
        report.frame_paths.append(final)

    if report.extracted == 0:
        raise FrameExtractionError("No frames could be extracted from the video")
    if report.mismatch:
        logger.error(
            f"Frame count mismatch for {os.path.basename(source_path)}: "
            f"expected {report.expected}, extracted {report.extracted}"
        )
        if strict:
            raise FrameCountMismatchError(report.advisory())
    return report


def read_first_frame(path: str, width: int, height: int) -> np.ndarray:
    """First decoded frame as an (height, width, 3) uint8 RGB array"""
    try:
        out, _ = (
            ffmpeg
            .input(path)
            .output("pipe:", format="rawvideo", pix_fmt="rgb24", **{"frames:v": 1})
            .run(capture_stdout=True, capture_stderr=True)
        )
    except ffmpeg.Error as e:
        raise ProbeError(f"Could not decode first frame: {ffmpeg_error_tail(e)}")

    expected = width * height * 3
    if len(out) < expected:
        raise ProbeError("Could not decode first frame")
    return np.frombuffer(out[:expected], np.uint8).reshape((height, width, 3))
