import copy
import io
import json

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from studio_ingest.core.config import DEFAULTS
from studio_ingest.core.errors import ToolExecutionError, ToolUnavailableError
from studio_ingest.main import create_app
from studio_ingest.services.exiftool import ExifTool
from studio_ingest.services.pipeline import IngestService
from studio_ingest.services.queue import InlineQueue
from studio_ingest.services.tracing import AttemptObserver


class FakeExifTool(ExifTool):
    """Answers exiftool command lines from canned data instead of a subprocess."""

    def __init__(self, metadata=None, binary_tags=None, *, unavailable=False):
        super().__init__("exiftool-fake")
        self.metadata = metadata or {}
        self.binary_tags = binary_tags or {}
        self.unavailable = unavailable
        self.calls = []

    def execute(self, args, *, timeout=None):
        self.calls.append(list(args))
        if self.unavailable:
            raise ToolUnavailableError("exiftool binary not found: exiftool-fake")
        if args[0] == "-ver":
            return b"12.76\n"
        if args[0] == "-b":
            return self.binary_tags.get(args[1].lstrip("-"), b"")
        if "-j" in args:
            return json.dumps([{"SourceFile": args[-1], **self.metadata}]).encode()
        raise ToolExecutionError(f"unexpected args {args}", returncode=2)


class RecordingObserver(AttemptObserver):
    def __init__(self):
        self.attempts = []
        self.started = []
        self.ended = []

    def attempt(self, event):
        self.attempts.append(event)

    def session_started(self, event):
        self.started.append(event)

    def session_ended(self, event):
        self.ended.append(event)


def jpeg_bytes(size=(1200, 800), *, date="2025:03:14 10:20:30", make="Canon", model="Canon EOS R5",
               color=(200, 120, 40)):
    im = Image.new("RGB", size, color)
    exif = Image.Exif()
    if date:
        exif[0x0132] = date      # DateTime
    if make:
        exif[0x010F] = make
    if model:
        exif[0x0110] = model
    buf = io.BytesIO()
    im.save(buf, format="JPEG", quality=90, exif=exif.tobytes())
    return buf.getvalue()


@pytest.fixture
def make_jpeg():
    return jpeg_bytes


@pytest.fixture
def defaults(tmp_path):
    d = copy.deepcopy(DEFAULTS)
    d["paths"]["data_dir"] = str(tmp_path / "data")
    d["tracing"]["sink"] = "log"
    return d


@pytest.fixture
def fake_exiftool():
    # default: exiftool is "installed" but knows nothing, so Pillow does the work
    return FakeExifTool()


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def service(defaults, fake_exiftool, observer):
    return IngestService(defaults, queue=InlineQueue(), observer=observer,
                         exiftool_factory=lambda cfg: fake_exiftool)


@pytest.fixture
def client(defaults, fake_exiftool):
    app = create_app(defaults=defaults, queue=InlineQueue(), exiftool_factory=lambda cfg: fake_exiftool,
                     configure_logging=False)
    with TestClient(app) as c:
        c.headers.update({"X-User-Id": "7"})
        yield c
