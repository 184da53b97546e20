import os
import logging
from typing import Tuple

import ffmpeg
import numpy as np

from errors import PipelineError, WhiteBalanceError
from utils.media import MediaInfo, ffmpeg_error_tail, probe_media, read_first_frame

logger = logging.getLogger(__name__)

# Intermediate clips stay lossless-ish until the final encode.
PRORES_OUTPUT = {"vcodec": "prores_ks", "profile:v": 3, "an": None}


def square_crop_box(width: int, height: int) -> Tuple[int, int, int]:
    """(size, x, y) of the centered square inside a width x height frame"""
    size = min(width, height)
    return size, (width - size) // 2, (height - size) // 2


def trim_window(duration: float, start: float, length: float) -> Tuple[float, float]:
    """Clamp the (start, length) window to a clip of ``duration`` seconds"""
    if duration <= 0:
        return start, length
    if start >= duration:
        start = 0.0
    return start, max(0.0, min(length, duration - start))


def white_balance_gain(frame: np.ndarray) -> float:
    """Uniform gain that maps the brightest channel value of the top row to 255"""
    top_row = np.asarray(frame)[0, :, :3]
    brightest = int(top_row.max())
    if brightest == 0:
        raise WhiteBalanceError("White balance failed: top row of the first frame is black")
    return 255.0 / brightest


def crop_and_trim(source_path: str, dest_path: str, info: MediaInfo, start: float, length: float) -> str:
    size, x, y = square_crop_box(info.width, info.height)
    start, length = trim_window(info.duration, start, length)
    logger.info(f"Cropping to {size}x{size}+{x}+{y}, trimming {start:.2f}s + {length:.2f}s")
    try:
        (
            ffmpeg
            .input(source_path, ss=start, t=length)
            .crop(x, y, size, size)
            .output(dest_path, **PRORES_OUTPUT)
            .run(overwrite_output=True, quiet=True)
        )
    except ffmpeg.Error as e:
        raise PipelineError(f"Crop/trim failed: {ffmpeg_error_tail(e)}")
    return dest_path


def apply_uniform_gain(source_path: str, dest_path: str, gain: float) -> str:
    try:
        (
            ffmpeg
            .input(source_path)
            .filter("colorchannelmixer", rr=gain, gg=gain, bb=gain)
            .output(dest_path, **PRORES_OUTPUT)
            .run(overwrite_output=True, quiet=True)
        )
    except ffmpeg.Error as e:
        raise WhiteBalanceError(f"White balance failed: {ffmpeg_error_tail(e)}")
    return dest_path


def preprocess_clip(source_path: str, work_dir: str, trim_start: float, trim_duration: float) -> str:
    """Square-crop, trim and white-balance an upload; returns the intermediate clip path"""
    os.makedirs(work_dir, exist_ok=True)
    info = probe_media(source_path)

    cropped = crop_and_trim(
        source_path, os.path.join(work_dir, "cropped.mov"), info, trim_start, trim_duration
    )
    size, _, _ = square_crop_box(info.width, info.height)
    gain = white_balance_gain(read_first_frame(cropped, size, size))
    logger.info(f"White balance gain {gain:.4f}")

    balanced = os.path.join(work_dir, "balanced.mov")
    if abs(gain - 1.0) < 1e-3:
        os.replace(cropped, balanced)
        return balanced

    apply_uniform_gain(cropped, balanced, gain)
    os.remove(cropped)
    return balanced
