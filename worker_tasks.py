import os
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import List, Optional

from loguru import logger

from config import settings
from errors import (
    AssetUploadError,
    IconEncodingError,
    JobSupersededError,
    PipelineError,
    WebTierError,
)
from job_states import JobStatus
from monitoring import stage_duration
from utils.asset_store import CloudinaryAssetStore
from utils.compositor import (
    CanvasGeometry,
    InnerFadeOptions,
    blur_file,
    composite_file,
    prepare_inner_file,
    project_outer_file,
)
from utils.encoder import encode_frames, encode_icon, framerate_arg
from utils.media import FRAME_PATTERN, extract_frames, map_in_batches, probe_media
from utils.preprocess import preprocess_clip
from worker_client import WebTierClient

# Overall progress band (start, end) covered by each stage.
STAGE_BANDS = {
    "preprocessing": (5, 12),
    "extracting": (12, 25),
    "preparing": (25, 35),
    "projecting": (35, 50),
    "blurring": (50, 65),
    "compositing": (65, 78),
    "encoding": (78, 86),
    "icon": (86, 90),
    "uploading": (90, 99),
}


class ProgressReporter:
    """Maps per-stage progress onto the job's 0-100 scale and posts it"""

    def __init__(self, client: WebTierClient, job_id: str):
        self.client = client
        self.job_id = job_id
        self.stage = "starting"
        self._last = ("starting", 0.0, "", None)

    def report(self, stage: str, fraction: float = 0.0, message: str = "", status: Optional[str] = None):
        self.stage = stage
        self._last = (stage, fraction, message, status)
        start, end = STAGE_BANDS.get(stage, (0, 100))
        fraction = min(max(fraction, 0.0), 1.0)
        overall = int(start + (end - start) * fraction)
        self.client.progress(
            self.job_id,
            stage,
            overall,
            message or stage.capitalize(),
            status=status or JobStatus.PROCESSING.value,
        )

    def batches(self, stage: str, label: str):
        """``on_batch`` callback for map_in_batches"""
        def _on_batch(done: int, total: int):
            self.report(stage, done / total if total else 1.0, f"{label}: {done}/{total} frames")
        return _on_batch

    @contextmanager
    def keepalive(self, interval: Optional[float] = None):
        """Re-post the last progress every ``interval`` seconds while a long stage runs.

        The stale-job sweep on the web tier only counts progress writes, so a
        single ffmpeg encode or upload would otherwise look stalled.
        """
        interval = interval or settings.progress_keepalive_seconds
        stop = threading.Event()

        def _run():
            while not stop.wait(interval):
                try:
                    self.report(*self._last)
                except WebTierError as e:
                    logger.warning(f"Job {self.job_id}: keepalive progress failed: {e}")

        thread = threading.Thread(target=_run, name=f"progress-{self.job_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join(timeout=interval + settings.web_request_timeout)


@dataclass
class RenderResult:
    video_path: str
    frame_count: int
    duration: float
    framerate: str
    clip_path: str  # preprocessed clip, the icon source
    advisories: List[str] = field(default_factory=list)


@contextmanager
def timed_stage(stage: str, job_id: str):
    start = time.time()
    with stage_duration.labels(stage=stage).time():
        yield
    logger.info(f"Job {job_id}: {stage} took {time.time() - start:.2f}s")


def _frame_paths(directory: str, count: int) -> List[str]:
    os.makedirs(directory, exist_ok=True)
    return [os.path.join(directory, FRAME_PATTERN % index) for index in range(1, count + 1)]


def render_main_video(source_path: str, work_dir: str, reporter: ProgressReporter, job_id: str) -> RenderResult:
    """Run preprocessing, extraction, compositing and encoding strictly in sequence"""
    geometry = CanvasGeometry.from_settings(settings)
    fade_options = InnerFadeOptions.from_settings(settings)
    batch = settings.frame_batch_size
    advisories = []

    reporter.report("preprocessing", 0.0, "Cropping, trimming and white balancing")
    with timed_stage("preprocessing", job_id):
        clip = preprocess_clip(
            source_path, work_dir, settings.trim_start_seconds, settings.trim_duration_seconds
        )
        info = probe_media(clip)

    extract_size = max(min(info.width, info.height), settings.inner_size * settings.extract_scale)
    reporter.report("extracting", 0.0, f"Extracting {info.expected_frames} frames")
    with timed_stage("extracting", job_id):
        extraction = extract_frames(
            clip,
            os.path.join(work_dir, "frames"),
            info,
            extract_size,
            batch_size=batch,
            strict=settings.strict_frame_count,
            on_batch=reporter.batches("extracting", "Extracting"),
        )
    if extraction.advisory():
        advisories.append(extraction.advisory())

    frames = extraction.frame_paths
    count = len(frames)

    inner_frames = _frame_paths(os.path.join(work_dir, "inner"), count)
    with timed_stage("preparing", job_id):
        map_in_batches(
            lambda pair: prepare_inner_file(pair[0], pair[1], geometry.inner, fade_options),
            list(zip(frames, inner_frames)),
            batch,
            reporter.batches("preparing", "Preparing inner frames"),
        )

    projected = _frame_paths(os.path.join(work_dir, "projected"), count)
    with timed_stage("projecting", job_id):
        map_in_batches(
            lambda pair: project_outer_file(pair[0], pair[1], geometry, fade=settings.border_fade),
            list(zip(frames, projected)),
            batch,
            reporter.batches("projecting", "Processing outer projection"),
        )

    blurred = _frame_paths(os.path.join(work_dir, "blurred"), count)
    with timed_stage("blurring", job_id):
        map_in_batches(
            lambda pair: blur_file(pair[0], pair[1], settings.blur_radius),
            list(zip(projected, blurred)),
            batch,
            reporter.batches("blurring", "Applying blur"),
        )

    final_dir = os.path.join(work_dir, "final")
    final = _frame_paths(final_dir, count)
    with timed_stage("compositing", job_id):
        map_in_batches(
            lambda triple: composite_file(triple[0], triple[1], triple[2], geometry),
            list(zip(blurred, inner_frames, final)),
            batch,
            reporter.batches("compositing", "Compositing"),
        )

    framerate = framerate_arg(count, info.duration, info.nominal_fps)
    reporter.report("encoding", 0.0, f"Encoding {count} frames at {framerate} fps")
    video_path = os.path.join(work_dir, "output.mp4")
    with timed_stage("encoding", job_id), reporter.keepalive():
        encode_frames(
            os.path.join(final_dir, FRAME_PATTERN),
            video_path,
            framerate,
            preset=settings.encode_preset,
            crf=settings.encode_crf,
        )

    return RenderResult(
        video_path=video_path,
        frame_count=count,
        duration=info.duration,
        framerate=framerate,
        clip_path=clip,
        advisories=advisories,
    )


def cleanup_job_files(*paths: str) -> None:
    for path in paths:
        try:
            if os.path.isdir(path):
                shutil.rmtree(path)
            elif os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to clean up {path}: {e}")


def process_video_job(job_id: str, item_number: int, source_path: str,
                      client: Optional[WebTierClient] = None,
                      store: Optional[CloudinaryAssetStore] = None):
    """RQ task: render, upload and publish the promotional video for one item"""
    start_time = time.time()
    logger.info(f"Starting job {job_id} for item {item_number}")

    client = client or WebTierClient.from_settings()
    reporter = ProgressReporter(client, job_id)
    work_dir = os.path.join(settings.jobs_base_dir, job_id)
    upload_dir = os.path.dirname(source_path)

    try:
        reporter.report("preprocessing", 0.0, "Starting video processing")
        store = store or CloudinaryAssetStore.from_settings(settings)

        render = render_main_video(source_path, work_dir, reporter, job_id)
        advisories = list(render.advisories)

        icon_path = None
        reporter.report("icon", 0.0, "Generating icon variant")
        try:
            with timed_stage("icon", job_id), reporter.keepalive():
                icon = encode_icon(
                    render.clip_path,
                    os.path.join(work_dir, "icon.mp4"),
                    crf_presets=settings.icon_crf_presets,
                    size=settings.icon_size,
                    max_bytes=settings.icon_max_bytes,
                )
            icon_path = icon.path
            if not icon.within_limit:
                advisories.append(f"Icon is {icon.size_bytes} bytes, over the size limit")
        except IconEncodingError as e:
            logger.warning(f"Job {job_id}: {e}")
            advisories.append(f"Icon generation failed: {e}")

        reporter.report(
            "uploading", 0.0, "Uploading video to Cloudinary", status=JobStatus.CLOUDINARY_UPLOAD.value
        )
        with timed_stage("uploading", job_id), reporter.keepalive():
            main_asset = store.upload(render.video_path, f"{item_number}_full")

            icon_asset = None
            if icon_path:
                reporter.report(
                    "uploading", 0.5, "Uploading icon to Cloudinary", status=JobStatus.CLOUDINARY_UPLOAD.value
                )
                try:
                    icon_asset = store.upload(icon_path, f"{item_number}_icon")
                except AssetUploadError as e:
                    logger.warning(f"Job {job_id}: icon upload failed: {e}")
                    advisories.append(f"Icon upload failed: {e}")

        result = {
            "video_url": main_asset.url,
            "video_public_id": main_asset.public_id,
            "icon_url": icon_asset.url if icon_asset else "",
            "icon_public_id": icon_asset.public_id if icon_asset else "",
        }
        message = "Complete"
        if advisories:
            message = f"Complete with warnings: {'; '.join(advisories)}"
        client.complete(job_id, result, message)

        logger.info(
            f"Job {job_id}: complete in {time.time() - start_time:.2f}s "
            f"({render.frame_count} frames, {render.framerate} fps)"
        )
        cleanup_job_files(work_dir, upload_dir)
        return result

    except JobSupersededError as e:
        # Files are left in place; a newer job owns this item now.
        logger.warning(f"Job {job_id}: stopping, web tier answered {e.detail}")
        return None

    except PipelineError as e:
        logger.error(f"Job {job_id} failed during {reporter.stage}: {e}")
        _report_failure(client, job_id, str(e))
        raise

    except Exception as e:
        logger.exception(f"Job {job_id}: unexpected error during {reporter.stage}")
        _report_failure(client, job_id, f"Unexpected error during {reporter.stage}: {e}")
        raise  # Re-raise for RQ to handle


def _report_failure(client: WebTierClient, job_id: str, error: str) -> None:
    try:
        client.fail(job_id, error, "Video processing failed")
    except WebTierError as e:
        logger.error(f"Job {job_id}: could not report failure: {e}")
