import io
from datetime import datetime, timedelta, timezone

import pytest

from studio_ingest.core.errors import InvalidUploadError, PreviewStateError
from studio_ingest.services.cleanup import sweep


def _upload(service, data, name="IMG_0001.jpg", user_id=7):
    return service.upload(user_id, name, io.BytesIO(data))


def test_upload_stages_and_renders_preview(service, make_jpeg, observer):
    img = _upload(service, make_jpeg())
    temp = service.temp_storage()

    assert img.temp_path == f"originals/{img.id}.jpg"
    assert img.extraction_method == "pillow"      # the fake exiftool knows nothing
    assert img.metadata["date_taken"] == "2025-03-14T10:20:30"
    assert img.metadata_error is None
    assert img.preview_status == "ready"
    assert img.preview_width == 1200
    assert temp.exists(img.preview_path) and temp.exists(img.thumbnail_path)
    assert img.order_index == 0

    ops = {(e.operation, e.method) for e in observer.attempts}
    assert ("metadata_extraction", "pillow") in ops
    assert ("preview_extraction", "pillow") in ops
    assert len(observer.started) == 2 and all(e.success for e in observer.ended)


def test_large_preview_is_bounded(service, make_jpeg):
    img = _upload(service, make_jpeg(size=(3000, 2000)))
    assert img.preview_width == 2048


def test_upload_rejects_bad_input(service, make_jpeg):
    with pytest.raises(InvalidUploadError):
        _upload(service, make_jpeg(), name="notes.txt")
    with pytest.raises(InvalidUploadError):
        _upload(service, b"", name="empty.jpg")
    assert service.list_images(7) == []


def test_missing_tool_is_recorded_not_fatal(service, fake_exiftool):
    fake_exiftool.unavailable = True
    img = _upload(service, b"\x00garbage" * 64, name="IMG_0002.CR3")
    assert img.extraction_method is None
    assert img.metadata_error.startswith("decode_error:")
    assert img.metadata == {"file_size": 512}
    # nothing in the preview chain can decode it either
    assert img.preview_status == "failed"
    assert img.preview_error


def test_raw_uses_embedded_preview(service, fake_exiftool, make_jpeg):
    fake_exiftool.metadata = {"DateTimeOriginal": "2024:11:02 09:00:00", "Make": "Sony"}
    fake_exiftool.binary_tags = {"PreviewImage": make_jpeg(size=(1616, 1080))}
    img = _upload(service, b"\x00raw" * 256, name="DSC0001.ARW")
    assert img.extraction_method == "exiftool"
    assert img.metadata["camera_make"] == "Sony"
    assert img.preview_status == "ready"
    assert img.preview_width == 1616


def test_retry_only_from_failed(service, fake_exiftool, make_jpeg):
    img = _upload(service, make_jpeg())
    with pytest.raises(PreviewStateError):
        service.retry_preview(img.id, 7)

    fake_exiftool.unavailable = True
    bad = _upload(service, b"\x00garbage" * 64, name="IMG_0003.CR3")
    assert bad.preview_status == "failed"
    fake_exiftool.unavailable = False
    fake_exiftool.binary_tags = {"PreviewImage": make_jpeg(size=(1000, 800))}
    assert service.retry_preview(bad.id, 7).preview_status == "ready"


def test_retry_queues_a_preview_staged_while_disabled(service, make_jpeg, defaults):
    defaults["exif"]["preview"]["enabled"] = False
    img = _upload(service, make_jpeg())
    assert img.preview_status == "pending"

    defaults["exif"]["preview"]["enabled"] = True
    after = service.retry_preview(img.id, 7)
    assert (after.preview_status, after.preview_width) == ("ready", 1200)


def test_preview_for_an_image_removed_mid_task_leaves_no_files(service, make_jpeg, defaults, monkeypatch):
    defaults["exif"]["preview"]["enabled"] = False
    img = _upload(service, make_jpeg())
    registry = service.registry
    mark_ready = registry.mark_preview_ready

    def removed_first(image_id, *args, **kwargs):
        registry.delete(image_id)
        return mark_ready(image_id, *args, **kwargs)

    monkeypatch.setattr(registry, "mark_preview_ready", removed_first)
    assert service.request_preview(img.id)

    temp = service.temp_storage()
    assert not temp.exists(f"previews/{img.id}.jpg")
    assert not temp.exists(f"thumbnails/{img.id}.jpg")


def test_preview_status_is_scoped_to_owner(service, make_jpeg):
    img = _upload(service, make_jpeg())
    assert [s["preview_status"] for s in service.preview_status([img.id, "nope"], 7)] == ["ready"]
    assert service.preview_status([img.id], 8) == []


def test_enhancement_swaps_preview(service, make_jpeg, observer):
    img = _upload(service, make_jpeg())
    temp = service.temp_storage()
    old = img.preview_path
    seen = len(observer.started)

    [res] = service.request_enhancement([img.id], 7)
    assert res == {"id": img.id, "status": "queued", "target_width": 1500}

    after = service.get_image(img.id, 7)
    assert after.enhancement_status == "ready"
    assert after.preview_status == "ready"
    assert (after.preview_path, after.preview_width) == (f"previews/{img.id}-1500.jpg", 1500)
    assert temp.exists(after.preview_path)
    assert not temp.exists(old)

    [started] = observer.started[seen:]
    [ended] = observer.ended[seen:]
    assert (started.operation, ended.success) == ("enhancement", True)
    assert started.session_id == ended.session_id
    enhance_attempts = [e for e in observer.attempts if e.operation == "enhancement"]
    assert {e.session_id for e in enhance_attempts} == {started.session_id}


def test_enhancement_caps_and_rejects(service, make_jpeg):
    service.update_settings({"exif.enhancement.max_dimension": 1200})
    img = _upload(service, make_jpeg())
    assert service.request_enhancement([img.id, "nope"], 7) == [
        {"id": img.id, "status": "already_max", "width": 1200},
        {"id": "nope", "status": "not_found"},
    ]


def test_enhancement_failure_keeps_preview(service, make_jpeg, observer):
    img = _upload(service, make_jpeg())
    service.temp_storage().delete(img.preview_path)
    [res] = service.request_enhancement([img.id], 7)
    assert res["status"] == "queued"
    after = service.get_image(img.id, 7)
    assert after.enhancement_status == "failed"
    assert (after.preview_status, after.preview_path) == ("ready", img.preview_path)
    assert (observer.started[-1].operation, observer.ended[-1].success) == ("enhancement", False)


def test_delete_removes_files(service, make_jpeg):
    img = _upload(service, make_jpeg())
    temp = service.temp_storage()
    service.delete(img.id, 7)
    assert service.registry.find(img.id) is None
    for rel in (img.temp_path, img.preview_path, img.thumbnail_path):
        assert not temp.exists(rel)


def test_settings_overrides_apply_per_call(service, make_jpeg):
    service.update_settings({"exif.preview.max_dimension": 600})
    assert service.settings_view()["overrides"] == {"exif.preview.max_dimension": 600}
    assert _upload(service, make_jpeg()).preview_width == 600
    service.reset_settings()
    assert _upload(service, make_jpeg()).preview_width == 1200


def test_sweep_expires_old_staging(service, make_jpeg):
    img = _upload(service, make_jpeg())
    temp = service.temp_storage()

    dry = sweep(service, dry_run=True, now=datetime.now(timezone.utc) + timedelta(days=3))
    assert dry.expired == [img.id]
    assert service.registry.find(img.id) is not None

    report = sweep(service, now=datetime.now(timezone.utc) + timedelta(days=3))
    assert report.expired == [img.id]
    assert service.registry.find(img.id) is None
    assert not temp.exists(img.temp_path)


def test_sweep_fails_stuck_previews(service, make_jpeg, defaults):
    defaults["exif"]["preview"]["enabled"] = False
    img = _upload(service, make_jpeg())
    assert service.registry.claim_preview(img.id)
    report = sweep(service, now=datetime.now(timezone.utc) + timedelta(hours=1))
    assert report.stale_failed == 1
    assert service.registry.get(img.id).preview_status == "failed"
