from datetime import datetime

import pytest

from studio_ingest.core.config import DEFAULTS
from studio_ingest.core.errors import NamingCollisionError, NamingError
from studio_ingest.services.naming import (
    NamingContext,
    format_date,
    render_destination,
    resolve_collision,
)

SHOT = datetime(2025, 3, 14, 10, 20, 30)


def _ctx(**kw):
    base = dict(image_id="0f9c", original_filename="IMG_0001.CR3", sequence=7, date=SHOT,
                camera_make="Canon", camera_model="Canon EOS R5")
    base.update(kw)
    return NamingContext(**base)


def test_default_schema():
    dest = render_destination(DEFAULTS["schema"], _ctx())
    assert dest.relative_path == "shoots/2025/03/Canon/007-IMG_0001.CR3"
    assert not dest.used_fallback


def test_date_letters_and_escapes():
    assert format_date(SHOT, "Y-m-d") == "2025-03-14"
    assert format_date(SHOT, "y\\mn") == "25m3"
    assert format_date(SHOT, "H:i:s") == "10:20:30"


def test_padding_and_uuid():
    schema = {"path": "{model}", "filename": "{uuid}_{sequence}", "sequence_padding": 5}
    dest = render_destination(schema, _ctx(sequence=42))
    assert dest.path == "Canon-EOS-R5"
    assert dest.filename == "0f9c_00042.CR3"


def test_missing_tag_uses_fallback():
    schema = {"path": "clients/{project}", "filename": "{filename}-{sequence}",
              "fallback_path": "unsorted/{date:Y}", "fallback_filename": "{sequence}-{original}"}
    dest = render_destination(schema, _ctx())
    assert dest.relative_path == "unsorted/2025/007-IMG_0001.CR3"
    assert dest.used_fallback

    tagged = render_destination(schema, _ctx(project="Smith Wedding", filename_tag="ceremony"))
    assert tagged.relative_path == "clients/Smith-Wedding/ceremony-007.CR3"


def test_fallback_needing_a_tag_fails():
    schema = {"path": "{project}", "fallback_path": "{project}", "filename": "{sequence}"}
    with pytest.raises(NamingError):
        render_destination(schema, _ctx())


def test_unknown_variable_and_traversal():
    with pytest.raises(NamingError):
        render_destination({"path": "{shoot}", "filename": "{sequence}"}, _ctx())
    with pytest.raises(NamingError):
        render_destination({"path": "../{date:Y}", "filename": "{sequence}"}, _ctx())


def test_missing_camera_renders_unknown():
    dest = render_destination(DEFAULTS["schema"], _ctx(camera_make=None))
    assert dest.path == "shoots/2025/03/unknown"


def test_collision_policies():
    taken = {"a/001-x.jpg", "a/001-x_2.jpg"}
    assert resolve_collision("a/002-x.jpg", taken.__contains__) == "a/002-x.jpg"
    assert resolve_collision("a/001-x.jpg", taken.__contains__) == "a/001-x_3.jpg"
    with pytest.raises(NamingCollisionError):
        resolve_collision("a/001-x.jpg", taken.__contains__, "fail")
