import os
import time
import pytest
from unittest.mock import Mock, patch

import httpx
import numpy as np
from fastapi.testclient import TestClient
from PIL import Image

import worker
from config import settings
from database import CatalogItem, VideoJob
from errors import AssetUploadError, IconEncodingError, WebTierError
from utils.asset_store import UploadedAsset
from utils.encoder import IconResult
from utils.media import ExtractionReport, MediaInfo
from worker_client import WebTierClient
from worker_tasks import ProgressReporter, RenderResult, process_video_job, render_main_video


def get_job(db, job_id):
    db.expire_all()
    return db.query(VideoJob).filter(VideoJob.id == job_id).first()


@pytest.fixture
def queue():
    return Mock()


@pytest.fixture
def worker_client(web_client, queue):
    worker.app.dependency_overrides[worker.get_web_client] = lambda: web_client
    worker.app.dependency_overrides[worker.get_queue] = lambda: queue
    yield TestClient(worker.app)
    worker.app.dependency_overrides.clear()


def upload(worker_client, job_id, token=None, filename="clip.mov", body=b"\x00\x00\x00\x18ftypqt  ", headers=None):
    headers = dict(headers or {})
    if token:
        headers["X-Upload-Token"] = token
    return worker_client.post(
        f"/upload/{job_id}",
        files={"video": (filename, body, "video/quicktime")},
        headers=headers
    )


class TestUploadEndpoint:

    def test_upload_verifies_and_enqueues(self, worker_client, start_job, queue, db):
        job = start_job(7)
        response = upload(worker_client, job["job_id"], job["upload_token"])
        assert response.status_code == 200
        assert response.json()["item_number"] == 7

        assert get_job(db, job["job_id"]).status == "uploaded"
        source_path = os.path.join(settings.uploads_dir, job["job_id"], "source.mov")
        assert os.path.exists(source_path)
        queue.enqueue.assert_called_once_with(
            process_video_job, job["job_id"], 7, source_path, job_timeout=-1
        )

    def test_bearer_token_accepted(self, worker_client, start_job):
        job = start_job(7)
        response = upload(worker_client, job["job_id"], headers={"Authorization": f"Bearer {job['upload_token']}"})
        assert response.status_code == 200

    def test_wrong_token_rejected_before_storing(self, worker_client, start_job, queue, db):
        job = start_job(7)
        response = upload(worker_client, job["job_id"], "0" * 64)
        assert response.status_code == 401
        assert not os.path.exists(os.path.join(settings.uploads_dir, job["job_id"]))
        queue.enqueue.assert_not_called()
        assert get_job(db, job["job_id"]).status == "awaiting-upload"

    def test_missing_token(self, worker_client, start_job):
        job = start_job(7)
        assert upload(worker_client, job["job_id"]).status_code == 401

    def test_reused_token_conflicts(self, worker_client, start_job):
        job = start_job(7)
        upload(worker_client, job["job_id"], job["upload_token"])
        response = upload(worker_client, job["job_id"], job["upload_token"])
        assert response.status_code == 409

    def test_unsupported_extension(self, worker_client, start_job, queue):
        job = start_job(7)
        response = upload(worker_client, job["job_id"], job["upload_token"], filename="clip.gif")
        assert response.status_code == 400
        queue.enqueue.assert_not_called()

    def test_oversized_upload_fails_job(self, worker_client, start_job, queue, db, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_mb", 0)
        job = start_job(7)
        response = upload(worker_client, job["job_id"], job["upload_token"])
        assert response.status_code == 413
        queue.enqueue.assert_not_called()
        assert get_job(db, job["job_id"]).status == "failed"

    def test_worker_health(self, worker_client):
        data = worker_client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["directories"] == {"uploads": "writable", "jobs": "writable"}

    def test_worker_health_with_unusable_jobs_dir(self, worker_client, tmp_path, monkeypatch):
        blocker = tmp_path / "jobs"
        blocker.write_text("not a directory")
        monkeypatch.setattr(settings, "jobs_base_dir", str(blocker))

        data = worker_client.get("/health").json()
        assert data["status"] == "unhealthy"
        assert data["directories"]["jobs"].startswith("error:")


class TestHeartbeatLoop:

    def test_beat_marks_worker_online(self, client, web_client):
        loop = worker.HeartbeatLoop(web_client, settings.heartbeat_interval_seconds)
        assert loop.beat() is True
        assert client.get("/api/video-worker/status").json()["online"] is True

    def test_beat_with_wrong_secret(self, client):
        bad = WebTierClient("http://testserver", "wrong-secret", "test-worker", http=client)
        loop = worker.HeartbeatLoop(bad, settings.heartbeat_interval_seconds)
        assert loop.beat() is False
        assert client.get("/api/video-worker/status").json()["online"] is False

    def test_start_and_stop(self, client, web_client):
        loop = worker.HeartbeatLoop(web_client, 0.05)
        loop.start()
        loop.stop()
        assert client.get("/api/video-worker/status").json()["online"] is True

    def test_unexpected_error_does_not_stop_loop(self):
        beats = []

        def heartbeat():
            beats.append(time.time())
            if len(beats) == 1:
                raise ValueError("Expecting value: line 1 column 1 (char 0)")
            return {"ok": True}

        client = Mock(worker_id="test-worker")
        client.heartbeat.side_effect = heartbeat
        loop = worker.HeartbeatLoop(client, 0.02)
        loop.start()
        time.sleep(0.15)
        try:
            assert loop._thread.is_alive()
            assert len(beats) >= 2
        finally:
            loop.stop()

    def test_non_json_answer_is_a_web_tier_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>proxy</html>"))
        http = httpx.Client(base_url="http://web.test", transport=transport)
        client = WebTierClient("http://web.test", "test-worker-secret", "test-worker", http=http)

        with pytest.raises(WebTierError):
            client.heartbeat()
        assert worker.HeartbeatLoop(client, 1.0).beat() is False


@pytest.fixture
def uploaded_job(start_job, web_client, tmp_path, monkeypatch):
    """A verified job with its source stored the way the upload endpoint stores it"""
    monkeypatch.setattr(settings, "jobs_base_dir", str(tmp_path / "jobs"))
    job = start_job(7)
    web_client.verify_upload(job["job_id"], job["upload_token"])

    upload_dir = tmp_path / "uploads" / job["job_id"]
    upload_dir.mkdir(parents=True)
    source = upload_dir / "source.mov"
    source.write_bytes(b"video")
    job["source_path"] = str(source)
    job["work_dir"] = str(tmp_path / "jobs" / job["job_id"])
    return job


@pytest.fixture
def rendered(uploaded_job):
    """Stand-in for render_main_video that leaves an encoded file in the job directory"""
    def _render(source_path, work_dir, reporter, job_id):
        os.makedirs(work_dir, exist_ok=True)
        video_path = os.path.join(work_dir, "output.mp4")
        with open(video_path, "wb") as f:
            f.write(b"mp4")
        clip_path = os.path.join(work_dir, "balanced.mov")
        with open(clip_path, "wb") as f:
            f.write(b"mov")
        reporter.report("encoding", 1.0, "Encoded")
        return RenderResult(video_path, 467, 15.58, "23350/779", clip_path)
    return _render


def fake_icon(video_path, dest_path, **kwargs):
    with open(dest_path, "wb") as f:
        f.write(b"icon")
    return IconResult(dest_path, 18, 4, True, [18])


def asset(public_id):
    return UploadedAsset(f"https://res.cloudinary.com/demo/video/upload/{public_id}.mp4", public_id)


class TestProcessVideoJob:

    @patch("worker_tasks.encode_icon", side_effect=fake_icon)
    def test_success_publishes_and_cleans_up(self, mock_icon, uploaded_job, rendered, web_client,
                                             catalog_item, db):
        store = Mock()
        store.upload.side_effect = [asset("7_full"), asset("7_icon")]

        with patch("worker_tasks.render_main_video", side_effect=rendered):
            result = process_video_job(uploaded_job["job_id"], 7, uploaded_job["source_path"],
                                       client=web_client, store=store)

        assert result["video_url"].endswith("7_full.mp4")
        assert [c.args[1] for c in store.upload.call_args_list] == ["7_full", "7_icon"]

        job = get_job(db, uploaded_job["job_id"])
        assert job.status == "complete"
        assert job.message == "Complete"
        item = db.query(CatalogItem).filter(CatalogItem.item_number == 7).first()
        assert item.video_url == result["video_url"]
        assert item.icon_url == result["icon_url"]

        assert not os.path.exists(uploaded_job["work_dir"])
        assert not os.path.exists(uploaded_job["source_path"])

    @patch("worker_tasks.encode_icon", side_effect=fake_icon)
    def test_primary_upload_failure_fails_job_and_keeps_files(self, mock_icon, uploaded_job, rendered,
                                                               web_client, catalog_item, db):
        store = Mock()
        store.upload.side_effect = AssetUploadError("Cloudinary upload failed for 7_full: timed out")

        with patch("worker_tasks.render_main_video", side_effect=rendered):
            with pytest.raises(AssetUploadError):
                process_video_job(uploaded_job["job_id"], 7, uploaded_job["source_path"],
                                  client=web_client, store=store)

        job = get_job(db, uploaded_job["job_id"])
        assert job.status == "failed"
        assert "timed out" in job.error
        assert os.path.exists(os.path.join(uploaded_job["work_dir"], "output.mp4"))
        assert os.path.exists(uploaded_job["source_path"])
        item = db.query(CatalogItem).filter(CatalogItem.item_number == 7).first()
        assert item.video_url is None

    @patch("worker_tasks.encode_icon", side_effect=fake_icon)
    def test_icon_upload_failure_is_advisory(self, mock_icon, uploaded_job, rendered, web_client,
                                             catalog_item, db):
        store = Mock()
        store.upload.side_effect = [asset("7_full"), AssetUploadError("Cloudinary upload failed for 7_icon")]

        with patch("worker_tasks.render_main_video", side_effect=rendered):
            result = process_video_job(uploaded_job["job_id"], 7, uploaded_job["source_path"],
                                       client=web_client, store=store)

        assert result["icon_url"] == ""
        job = get_job(db, uploaded_job["job_id"])
        assert job.status == "complete"
        assert "Icon upload failed" in job.message
        item = db.query(CatalogItem).filter(CatalogItem.item_number == 7).first()
        assert item.video_url == result["video_url"]
        assert item.icon_url is None

    @patch("worker_tasks.encode_icon", side_effect=IconEncodingError("Icon encoding failed for every quality preset"))
    def test_icon_generation_failure_is_advisory(self, mock_icon, uploaded_job, rendered, web_client, db):
        store = Mock()
        store.upload.return_value = asset("7_full")

        with patch("worker_tasks.render_main_video", side_effect=rendered):
            process_video_job(uploaded_job["job_id"], 7, uploaded_job["source_path"],
                              client=web_client, store=store)

        assert store.upload.call_count == 1
        job = get_job(db, uploaded_job["job_id"])
        assert job.status == "complete"
        assert "Icon generation failed" in job.message

    @patch("worker_tasks.encode_icon", side_effect=fake_icon)
    def test_superseded_mid_run_aborts_without_cleanup(self, mock_icon, uploaded_job, rendered,
                                                      web_client, start_job, db):
        def render_then_supersede(*args):
            result = rendered(*args)
            start_job(7)
            return result

        store = Mock()
        with patch("worker_tasks.render_main_video", side_effect=render_then_supersede):
            result = process_video_job(uploaded_job["job_id"], 7, uploaded_job["source_path"],
                                       client=web_client, store=store)

        assert result is None
        store.upload.assert_not_called()
        assert get_job(db, uploaded_job["job_id"]).status == "superseded"
        assert os.path.exists(uploaded_job["source_path"])

    @patch("worker_tasks.encode_icon", side_effect=fake_icon)
    def test_icon_is_encoded_from_preprocessed_clip(self, mock_icon, uploaded_job, rendered, web_client, db):
        store = Mock()
        store.upload.side_effect = [asset("7_full"), asset("7_icon")]

        with patch("worker_tasks.render_main_video", side_effect=rendered):
            process_video_job(uploaded_job["job_id"], 7, uploaded_job["source_path"],
                              client=web_client, store=store)

        source = mock_icon.call_args[0][0]
        assert source == os.path.join(uploaded_job["work_dir"], "balanced.mov")

    def test_unexpected_error_is_reported_and_reraised(self, uploaded_job, web_client, db):
        with patch("worker_tasks.render_main_video", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                process_video_job(uploaded_job["job_id"], 7, uploaded_job["source_path"],
                                  client=web_client, store=Mock())

        job = get_job(db, uploaded_job["job_id"])
        assert job.status == "failed"
        assert job.error == "Unexpected error during preprocessing: disk full"


def test_render_main_video_runs_every_stage(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "inner_size", 8)
    monkeypatch.setattr(settings, "outer_size", 24)
    monkeypatch.setattr(settings, "extract_scale", 1)
    monkeypatch.setattr(settings, "blur_radius", 2.0)
    monkeypatch.setattr(settings, "feather_px", 1)

    frames_dir = tmp_path / "work" / "frames"
    frames_dir.mkdir(parents=True)
    frame_paths = []
    for index in range(1, 4):
        path = frames_dir / f"frame_{index:06d}.png"
        Image.fromarray(np.full((8, 8, 3), 40 * index, dtype=np.uint8)).save(path)
        frame_paths.append(str(path))

    client = Mock()
    reporter = ProgressReporter(client, "job-1")

    with patch("worker_tasks.preprocess_clip", return_value="balanced.mov"), \
            patch("worker_tasks.probe_media", return_value=MediaInfo(8, 8, 1.0, 3.0, 4)), \
            patch("worker_tasks.extract_frames", return_value=ExtractionReport(frame_paths, expected=4)), \
            patch("worker_tasks.encode_frames") as mock_encode:
        result = render_main_video("source.mov", str(tmp_path / "work"), reporter, "job-1")

    final = tmp_path / "work" / "final" / "frame_000003.png"
    with Image.open(final) as image:
        assert image.size == (24, 24)
        assert image.mode == "RGB"

    assert result.frame_count == 3
    assert result.clip_path == "balanced.mov"
    assert result.framerate == "3/1"
    assert result.advisories == ["Frame count mismatch: extracted 3 of 4 frames"]
    assert mock_encode.call_args[0][2] == "3/1"

    reported = [c.args[2] for c in client.progress.call_args_list]
    assert reported == sorted(reported)
    assert {c.args[1] for c in client.progress.call_args_list} >= {
        "preprocessing", "extracting", "preparing", "projecting", "blurring", "compositing", "encoding"
    }


class TestProgressKeepalive:

    def test_reposts_last_progress_while_stage_runs(self):
        client = Mock()
        reporter = ProgressReporter(client, "job-1")
        reporter.report("encoding", 0.0, "Encoding 467 frames")

        with reporter.keepalive(interval=0.02):
            time.sleep(0.15)

        calls = client.progress.call_args_list
        assert len(calls) >= 3
        assert {c.args[1] for c in calls} == {"encoding"}
        assert {c.args[3] for c in calls} == {"Encoding 467 frames"}

    def test_stops_when_stage_finishes(self):
        client = Mock()
        reporter = ProgressReporter(client, "job-1")
        with reporter.keepalive(interval=0.02):
            pass
        count = client.progress.call_count
        time.sleep(0.1)
        assert client.progress.call_count == count

    def test_web_tier_errors_do_not_stop_it(self):
        client = Mock()
        client.progress.side_effect = WebTierError(502, "Web tier unreachable")
        reporter = ProgressReporter(client, "job-1")

        with reporter.keepalive(interval=0.02):
            time.sleep(0.1)

        assert client.progress.call_count >= 2
