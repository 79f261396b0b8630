import pytest

from studio_ingest.core.config import DEFAULTS, load_defaults, resolve_config, validate_overrides
from studio_ingest.core.errors import ConfigurationError, InvalidEditError


def test_overrides_win_and_none_means_default(defaults):
    cfg = resolve_config(defaults, {"schema.sequence_padding": 4, "exif.preview.quality": None})
    assert cfg.get("schema.sequence_padding") == 4
    assert cfg.get("exif.preview.quality") == 85
    # defaults are not mutated by resolution
    assert defaults["schema"]["sequence_padding"] == 3


def test_paths_resolve_under_data_dir(defaults, tmp_path):
    cfg = resolve_config(defaults)
    assert cfg.db_path == (tmp_path / "data" / "db" / "ingest.sqlite3").resolve()
    assert cfg.storage_root("temp") == (tmp_path / "data" / "ingest-temp").resolve()
    assert cfg.logs_dir is None


def test_extensions_are_normalized(defaults):
    defaults["ext"]["raw"] = ["CR3", ".Nef", " "]
    cfg = resolve_config(defaults)
    assert cfg.raw_ext == {".cr3", ".nef"}
    assert ".cr3" in cfg.supported_ext


def test_override_key_validation():
    validate_overrides(DEFAULTS, {"schema.path": "x", "exif.denormalize_keys.Artist": "lens"})
    with pytest.raises(InvalidEditError):
        validate_overrides(DEFAULTS, {"schema.nope": 1})
    with pytest.raises(InvalidEditError):
        validate_overrides(DEFAULTS, {"schema": {}})  # a section, not a leaf


def test_override_values_take_the_default_type():
    assert validate_overrides(DEFAULTS, {
        "exiftool.timeout": "45",
        "exif.enhancement.factor": 2,
        "schema.sequence_padding": 4.0,
        "exif.preview.enabled": False,
        "exiftool.speed_mode": "full",
    }) == {
        "exiftool.timeout": 45,
        "exif.enhancement.factor": 2.0,
        "schema.sequence_padding": 4,
        "exif.preview.enabled": False,
        "exiftool.speed_mode": "full",
    }


@pytest.mark.parametrize("key, value", [
    ("schema.sequence_padding", "four"),
    ("schema.sequence_padding", True),
    ("schema.sequence_padding", 2.5),
    ("exiftool.timeout", [30]),
    ("exif.preview.enabled", "yes"),
    ("exiftool.preview_tags", "PreviewImage"),
    ("exiftool.speed_mode", "turbo"),
    ("schema.on_collision", "overwrite"),
])
def test_bad_override_values_are_rejected(key, value):
    with pytest.raises(InvalidEditError, match=key):
        validate_overrides(DEFAULTS, {key: value})


@pytest.mark.parametrize("key", ["paths.db_path", "paths.data_dir", "storage.temp.root", "storage.final.root"])
def test_startup_settings_cannot_be_overridden(key):
    with pytest.raises(InvalidEditError, match="startup"):
        validate_overrides(DEFAULTS, {key: "/elsewhere"})
    validate_overrides(DEFAULTS, {"storage.temp.url_prefix": "/files"})


def test_toml_merges_over_defaults(tmp_path):
    p = tmp_path / "ingest.toml"
    p.write_text('[schema]\npath = "jobs/{date:Y}"\n\n[exif.denormalize_keys]\nArtist = "lens"\n')
    d = load_defaults(p)
    assert d["schema"]["path"] == "jobs/{date:Y}"
    assert d["schema"]["sequence_padding"] == 3
    # the mapping table is replaced, not merged
    assert d["exif"]["denormalize_keys"] == {"Artist": "lens"}


def test_bad_toml_is_a_configuration_error(tmp_path):
    p = tmp_path / "ingest.toml"
    p.write_text("[schema\npath = ")
    with pytest.raises(ConfigurationError):
        load_defaults(p)
