import os
import logging
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Callable, List, Optional, Sequence

import ffmpeg

from errors import EncodingError, IconEncodingError
from utils.media import ffmpeg_error_tail

logger = logging.getLogger(__name__)


def framerate_arg(frame_count: int, duration: float, fallback_fps: float) -> str:
    """Exact rational ``-framerate`` value, e.g. 467 frames over 15.58s -> "23350/779" """
    if frame_count > 0 and duration > 0:
        rate = Fraction(frame_count) / Fraction(str(round(duration, 6)))
    elif fallback_fps > 0:
        rate = Fraction(fallback_fps).limit_denominator(1001)
    else:
        raise EncodingError("Cannot encode: unknown frame rate")
    return f"{rate.numerator}/{rate.denominator}"


def encode_frames(
    frames_pattern: str,
    dest_path: str,
    framerate: str,
    preset: str = "medium",
    crf: int = 30,
) -> str:
    """Encode a PNG sequence to H.264 MP4 at the given input frame rate"""
    logger.info(f"Encoding {frames_pattern} at {framerate} fps (preset {preset}, crf {crf})")
    try:
        (
            ffmpeg
            .input(frames_pattern, framerate=framerate)
            .output(
                dest_path,
                vcodec="libx264",
                preset=preset,
                crf=crf,
                pix_fmt="yuv420p",
                movflags="+faststart",
                fps_mode="passthrough",
            )
            .run(overwrite_output=True, quiet=True)
        )
    except ffmpeg.Error as e:
        raise EncodingError(f"Encoding failed: {ffmpeg_error_tail(e)}")

    if not os.path.exists(dest_path) or os.path.getsize(dest_path) == 0:
        raise EncodingError("Encoding produced no output")
    return dest_path


@dataclass
class IconResult:
    path: str
    crf: int
    size_bytes: int
    within_limit: bool
    attempts: List[int] = field(default_factory=list)


def _encode_icon_attempt(source_path: str, dest_path: str, crf: int, size: int) -> None:
    (
        ffmpeg
        .input(source_path)
        .filter("scale", size, size, force_original_aspect_ratio="decrease")
        .filter("pad", size, size, "(ow-iw)/2", "(oh-ih)/2")
        .output(
            dest_path,
            vcodec="libx264",
            preset="slow",
            crf=crf,
            pix_fmt="yuv420p",
            movflags="+faststart",
            an=None,
        )
        .run(overwrite_output=True, quiet=True)
    )


def encode_icon(
    source_path: str,
    dest_path: str,
    crf_presets: Sequence[int] = (18, 20, 22, 24),
    size: int = 480,
    max_bytes: int = 2 * 1024 * 1024,
    encode: Callable[[str, str, int, int], None] = _encode_icon_attempt,
) -> IconResult:
    """Encode a small square icon, stepping CRF up until the file fits ``max_bytes``.

    The first attempt under the ceiling is kept. When none fit, the last
    successful attempt is kept anyway. Presets whose encode fails are skipped.
    """
    stem, ext = os.path.splitext(dest_path)
    attempts = []
    chosen: Optional[IconResult] = None

    for crf in crf_presets:
        attempt_path = f"{stem}_crf{crf}{ext or '.mp4'}"
        try:
            encode(source_path, attempt_path, crf, size)
        except (ffmpeg.Error, OSError) as e:
            logger.warning(f"Icon encode at crf {crf} failed: {ffmpeg_error_tail(e, 2)}")
            continue
        if not os.path.exists(attempt_path) or os.path.getsize(attempt_path) == 0:
            logger.warning(f"Icon encode at crf {crf} produced no output")
            continue

        attempts.append(crf)
        size_bytes = os.path.getsize(attempt_path)
        if chosen and chosen.path != attempt_path:
            os.remove(chosen.path)
        chosen = IconResult(
            path=attempt_path,
            crf=crf,
            size_bytes=size_bytes,
            within_limit=size_bytes <= max_bytes,
        )
        logger.info(f"Icon at crf {crf}: {size_bytes} bytes")
        if chosen.within_limit:
            break

    if chosen is None:
        raise IconEncodingError("Icon encoding failed for every quality preset")
    if not chosen.within_limit:
        logger.warning(
            f"Icon still {chosen.size_bytes} bytes at crf {chosen.crf}, over the {max_bytes} byte limit; keeping it"
        )

    os.replace(chosen.path, dest_path)
    chosen.path = dest_path
    chosen.attempts = attempts
    return chosen
