import threading

import pytest

from studio_ingest.core.errors import ImageNotFoundError, InvalidEditError
from studio_ingest.repositories.db import init_db
from studio_ingest.repositories.staging import StagingRegistry, validate_changes


def _create(reg, image_id, user_id=1):
    return reg.create(image_id=image_id, user_id=user_id, original_filename=f"{image_id}.jpg",
                      temp_path=f"originals/{image_id}.jpg", file_size=10, metadata={"iso": 100},
                      metadata_raw={"ISO": 100}, extraction_method="pillow", metadata_error=None,
                      thumbnail_path=None)


@pytest.fixture
def registry(tmp_path):
    db = tmp_path / "r.sqlite3"
    init_db(db)
    return StagingRegistry(db)


def test_create_appends_to_user_order(registry):
    a, b = _create(registry, "a"), _create(registry, "b")
    other = _create(registry, "x", user_id=2)
    assert (a.order_index, b.order_index, other.order_index) == (0, 1, 0)
    assert a.preview_status == "pending"
    assert a.metadata == {"iso": 100}


def test_validate_changes():
    assert validate_changes({"culled": True, "rating": 5, "rotation": -90, "starred": None}) == {
        "culled": 1, "rating": 5, "rotation": -90}
    for bad in ({"rating": 6}, {"rating": True}, {"rotation": 45}, {"culled": 1},
                {"order_index": -1}, {"temp_path": "x"}):
        with pytest.raises(InvalidEditError):
            validate_changes(bad)


def test_update_is_scoped_to_owner(registry):
    _create(registry, "a")
    assert registry.update("a", 1, {"starred": True}).starred
    with pytest.raises(ImageNotFoundError):
        registry.update("a", 2, {"starred": False})


def test_batch_update_is_all_or_nothing(registry):
    _create(registry, "a")
    _create(registry, "b")
    with pytest.raises(ImageNotFoundError):
        registry.batch_update(["a", "missing"], 1, {"rating": 3})
    assert registry.get("a").rating == 0
    out = registry.batch_update(["a", "b"], 1, {"rating": 3}, tags=[{"name": "keeper"}])
    assert [(i.rating, [t.name for t in i.tags]) for i in out] == [(3, ["keeper"]), (3, ["keeper"])]


def test_partial_reorder_keeps_unlisted_slots(registry):
    for i in "abcd":
        _create(registry, i)
    out = registry.reorder(1, ["d", "b"])
    # b and d swap the slots they held; a and c stay put
    assert [i.id for i in out] == ["a", "d", "c", "b"]
    assert [i.order_index for i in out] == [0, 1, 2, 3]


def test_reorder_rejects_duplicates_and_strangers(registry):
    _create(registry, "a")
    _create(registry, "z", user_id=2)
    with pytest.raises(InvalidEditError):
        registry.reorder(1, ["a", "a"])
    with pytest.raises(InvalidEditError):
        registry.reorder(1, ["z"])


def test_preview_transitions(registry):
    _create(registry, "a")
    assert not registry.mark_preview_ready("a", "previews/a.jpg", 100)  # not claimed
    assert registry.claim_preview("a")
    assert not registry.claim_preview("a")
    assert registry.mark_preview_failed("a", "boom")
    assert registry.get("a").preview_error == "boom"
    assert registry.reset_preview("a")
    assert not registry.reset_preview("a")
    assert registry.claim_preview("a")
    assert registry.mark_preview_ready("a", "previews/a.jpg", 100)
    img = registry.get("a")
    assert (img.preview_status, img.preview_path, img.preview_width) == ("ready", "previews/a.jpg", 100)


def test_concurrent_claims_have_one_winner(registry):
    _create(registry, "a")
    results = []
    barrier = threading.Barrier(8)

    def claim():
        barrier.wait()
        results.append(registry.claim_preview("a"))

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len([r for r in results if r is not None]) == 1


def test_superseded_attempt_cannot_finish(registry):
    _create(registry, "a")
    first = registry.claim_preview("a")
    registry.fail_stale_processing("9999-01-01T00:00:00+00:00")
    assert registry.reset_preview("a")
    second = registry.claim_preview("a")
    assert second == first + 1

    assert not registry.mark_preview_ready("a", "previews/a.jpg", 100, attempt=first)
    assert not registry.mark_preview_failed("a", "late", attempt=first)
    assert registry.get("a").preview_status == "processing"
    assert registry.mark_preview_ready("a", "previews/a.jpg", 1600, attempt=second)
    assert registry.get("a").preview_width == 1600


def test_enhancement_needs_ready_preview(registry):
    _create(registry, "a")
    assert not registry.request_enhancement("a", 2000)
    registry.claim_preview("a")
    registry.mark_preview_ready("a", "previews/a.jpg", 1600)
    assert registry.request_enhancement("a", 2000)
    assert not registry.request_enhancement("a", 2000)  # already in flight
    assert registry.claim_enhancement("a")
    assert registry.finish_enhancement("a", "previews/a-2000.jpg", 2000)
    img = registry.get("a")
    assert (img.preview_status, img.enhancement_status, img.preview_width) == ("ready", "ready", 2000)


def test_stale_processing_fails(registry):
    _create(registry, "a")
    registry.claim_preview("a")
    assert registry.fail_stale_processing("9999-01-01T00:00:00+00:00") == 1
    img = registry.get("a")
    assert (img.preview_status, img.preview_error) == ("failed", "timed out")


def test_ordered_for_promotion_skips_culled(registry):
    for i in "abc":
        _create(registry, i)
    registry.update("b", 1, {"culled": True})
    assert registry.ordered_for_promotion(["c", "b", "a"], 1) == ["a", "c"]
