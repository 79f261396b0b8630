import pytest

from studio_ingest.core.errors import ImageNotFoundError, InvalidEditError, TagConflictError
from studio_ingest.repositories.db import init_db
from studio_ingest.repositories.staging import StagingRegistry


@pytest.fixture
def registry(tmp_path):
    db = tmp_path / "t.sqlite3"
    init_db(db)
    reg = StagingRegistry(db)
    for i in ("a", "b"):
        reg.create(image_id=i, user_id=1, original_filename=f"{i}.jpg", temp_path=f"originals/{i}.jpg",
                   file_size=10, metadata={}, metadata_raw=None, extraction_method="pillow",
                   metadata_error=None, thumbnail_path=None)
    return reg


def test_find_or_create_is_idempotent_on_slug(registry):
    t1 = registry.tags.find_or_create("Smith Wedding", "project")
    t2 = registry.tags.find_or_create("smith  wedding", "project")
    assert t1.id == t2.id
    assert t1.slug == "smith-wedding"


def test_type_mismatch_conflicts(registry):
    registry.tags.find_or_create("Portrait")
    with pytest.raises(TagConflictError):
        registry.tags.find_or_create("portrait", "project")


def test_invalid_specs(registry):
    with pytest.raises(InvalidEditError):
        registry.tags.find_or_create("x" * 51)
    with pytest.raises(InvalidEditError):
        registry.tags.find_or_create("ok", "album")
    with pytest.raises(InvalidEditError):
        registry.tags.find_or_create("ok", color="red")


def test_single_valued_types_replace(registry):
    registry.tags.add("a", [{"name": "Smith", "tag_type": "project"}, {"name": "outdoor"}])
    tags = registry.tags.add("a", [{"name": "Jones", "tag_type": "project"}])
    assert sorted((t.tag_type, t.name) for t in tags) == [("normal", "outdoor"), ("project", "Jones")]
    assert registry.tags.project_tag_name("a") == "Jones"
    assert registry.tags.filename_tag_name("a") is None


def test_assign_syncs_exact_set(registry):
    registry.tags.add("a", [{"name": "one"}, {"name": "two"}])
    tags = registry.tags.assign("a", [{"name": "three"}])
    assert [t.name for t in tags] == ["three"]


def test_remove_and_unknown_image(registry):
    tag = registry.tags.add("b", [{"name": "keep"}])[0]
    assert registry.tags.remove("b", tag.id)
    assert not registry.tags.remove("b", tag.id)
    with pytest.raises(ImageNotFoundError):
        registry.tags.add("zzz", [{"name": "x"}])


def test_search_filters_by_type(registry):
    registry.tags.find_or_create("Wedding")
    registry.tags.find_or_create("Wedding 2025", "project")
    assert [t.name for t in registry.tags.search("wed")] == ["Wedding", "Wedding 2025"]
    assert [t.name for t in registry.tags.search("wed", "project")] == ["Wedding 2025"]
