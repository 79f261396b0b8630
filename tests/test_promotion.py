import io
import threading

import pytest

from studio_ingest.core.errors import AssociationError, StorageWriteError
from studio_ingest.repositories.db import connect
from studio_ingest.services.pipeline import IngestService
from studio_ingest.services.promotion import AssociationRegistry, project_columns
from studio_ingest.services.queue import InlineQueue
from studio_ingest.services.storage import LocalStorage


def _upload(service, make_jpeg, name="IMG_0001.jpg", user_id=7, **kw):
    return service.upload(user_id, name, io.BytesIO(make_jpeg(**kw)))


def _count(service, table):
    with connect(service.db_path) as c:
        return c.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"]


def test_promote_names_copies_and_removes_staging(service, make_jpeg):
    img = _upload(service, make_jpeg)
    service.add_tags(img.id, 7, [{"name": "keeper"}])
    temp = service.temp_storage()

    report = service.promote([img.id], 7)

    assert [o.status for o in report.promoted] == ["promoted"]
    out = report.promoted[0]
    assert out.file_path == "shoots/2025/03/Canon/001-IMG_0001.jpg"
    assert out.sequence == 1
    final = service.promoter().get_final(out.final_image_id)
    assert final.columns["camera_make"] == "Canon"
    assert final.columns["date_taken"].startswith("2025-03-14")
    assert final.size == service.promoter().final.size(out.file_path)
    assert service.registry.find(img.id) is None
    assert not temp.exists(img.temp_path)
    assert not temp.exists(img.thumbnail_path)
    with connect(service.db_path) as c:
        assert c.execute("SELECT COUNT(*) AS n FROM final_image_tags").fetchone()["n"] == 1


def test_sequence_follows_display_order_and_skips_culled(service, make_jpeg):
    a = _upload(service, make_jpeg, "a.jpg")
    b = _upload(service, make_jpeg, "b.jpg")
    c = _upload(service, make_jpeg, "c.jpg")
    service.update(b.id, 7, {"culled": True})
    service.reorder(7, [c.id, a.id])

    report = service.promote([a.id, b.id, c.id], 7)

    assert [(o.image_id, o.sequence) for o in report.promoted] == [(c.id, 1), (a.id, 2)]
    assert report.skipped == [b.id]
    assert service.registry.find(b.id) is not None


def test_collisions_get_a_suffix(service, make_jpeg):
    first = service.promote([_upload(service, make_jpeg).id], 7).promoted[0]
    second = service.promote([_upload(service, make_jpeg).id], 7).promoted[0]
    assert first.file_path == "shoots/2025/03/Canon/001-IMG_0001.jpg"
    assert second.file_path == "shoots/2025/03/Canon/001-IMG_0001_2.jpg"


def test_write_failure_leaves_staged_image_intact(service, make_jpeg, monkeypatch):
    img = _upload(service, make_jpeg)

    def boom(self, source, rel):
        raise StorageWriteError(f"cannot copy into {self.name}:{rel}: disk full")

    monkeypatch.setattr(LocalStorage, "copy_from", boom)
    report = service.promote([img.id], 7)

    assert report.promoted == []
    assert report.failed[0].error_code == "storage_write_failed"
    assert service.registry.get(img.id).temp_path == img.temp_path
    assert service.temp_storage().exists(img.temp_path)
    assert _count(service, "final_images") == 0


def test_concurrent_promotions_in_one_batch_get_distinct_sequences(service, make_jpeg):
    ids = [_upload(service, make_jpeg, f"{n}.jpg").id for n in ("a", "b", "c", "d")]
    promoter = service.promoter()
    batch_id = promoter.open_batch(7)
    results, errors = [], []

    def run(image_id):
        try:
            results.append(promoter.promote(image_id, batch_id, user_id=7))
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=run, args=(i,)) for i in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    promoter.close_batch(batch_id)

    assert errors == []
    assert sorted(o.sequence for o in results) == [1, 2, 3, 4]
    assert len({o.file_path for o in results}) == 4


def test_project_columns_uses_configured_keys():
    raw = {"EXIF:DateTimeOriginal": "2024:07:08 08:00:38", "Make": "Nikon", "FNumber": 1.8,
           "GPSLatitude": 51.5, "GPSLatitudeRef": "S", "ISOSpeedRatings": 200}
    cols = project_columns(raw, {"DateTimeOriginal": "date_taken", "Make": "camera_make",
                                 "FNumber": "f_stop", "GPSLatitude": "gps_lat", "ISO": "iso",
                                 "Foo": "not_a_column"})
    assert cols["date_taken"] == "2024-07-08T08:00:38"
    assert cols["camera_make"] == "Nikon"
    assert cols["f_stop"] == 1.8
    assert cols["gps_lat"] == -51.5
    assert cols["iso"] == 200          # alias through the normalized value
    assert cols["lens"] is None        # not configured


def test_association_validation():
    reg = AssociationRegistry()
    reg.register("gallery", lambda i: i == "g1")
    assert reg.validate(None, ["gallery"]) is None
    assert reg.validate({"type": "gallery", "id": "g1"}, ["gallery"]) == ("gallery", "g1")
    for bad, allowed in (({"type": "gallery", "id": "nope"}, ["gallery"]),
                         ({"type": "gallery", "id": "g1"}, []),
                         ({"type": "album", "id": "1"}, ["album"]),
                         ({"type": "gallery"}, ["gallery"])):
        with pytest.raises(AssociationError):
            reg.validate(bad, allowed)


def test_association_is_stored_on_final_rows(defaults, fake_exiftool, make_jpeg):
    defaults["associations"]["types"] = ["gallery"]
    reg = AssociationRegistry()
    reg.register("gallery", lambda i: True)
    svc = IngestService(defaults, queue=InlineQueue(), associations=reg,
                        exiftool_factory=lambda cfg: fake_exiftool)
    img = _upload(svc, make_jpeg)
    out = svc.promote([img.id], 7, {"type": "gallery", "id": "42"}).promoted[0]
    final = svc.promoter().get_final(out.final_image_id)
    assert (final.imageable_type, final.imageable_id) == ("gallery", "42")


def test_raw_capture_year_reaches_the_final_path(service, fake_exiftool, make_jpeg):
    fake_exiftool.metadata = {"DateTimeOriginal": "2019:07:04 18:30:00", "Make": "Nikon", "Model": "D850"}
    fake_exiftool.binary_tags = {"PreviewImage": make_jpeg(size=(1200, 800))}
    img = service.upload(7, "DSC_0042.NEF", io.BytesIO(b"\x00raw" * 256))
    assert img.extraction_method == "exiftool"
    service.update_settings({"schema.path": "{date:Y}"})

    [out] = service.promote([img.id], 7).promoted

    assert out.file_path.startswith("2019/")
    assert out.file_path == "2019/001-DSC_0042.NEF"
    assert service.promoter().get_final(out.final_image_id).columns["date_taken"].startswith("2019-07-04")


def test_fail_policy_leaves_the_second_image_staged(service, make_jpeg):
    service.promote([_upload(service, make_jpeg).id], 7)
    service.update_settings({"schema.on_collision": "fail"})
    img = _upload(service, make_jpeg)
    temp = service.temp_storage()

    report = service.promote([img.id], 7)

    assert report.promoted == []
    assert report.failed[0].error_code == "naming_collision"
    staged = service.registry.get(img.id)
    assert (staged.temp_path, staged.preview_path, staged.thumbnail_path) == (
        img.temp_path, img.preview_path, img.thumbnail_path)
    for rel in (img.temp_path, img.preview_path, img.thumbnail_path):
        assert temp.exists(rel)
    assert _count(service, "final_images") == 1
