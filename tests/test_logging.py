import logging

import pytest

from studio_ingest.core.logging import LOGGER_NAME, get_logger, image_logger, setup_logging


@pytest.fixture
def reset_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()


def test_console_splits_info_and_warnings(capsys, reset_logger):
    setup_logging("INFO")
    log = get_logger("pipeline")
    log.info("staged one")
    image_logger(log, "img-1").warning("metadata tool unavailable")

    out, err = capsys.readouterr()
    assert "staged one" in out and "staged one" not in err
    assert "WARNING [img-1] metadata tool unavailable" in err
    assert "metadata tool unavailable" not in out


def test_quiet_still_shows_warnings(capsys, reset_logger):
    setup_logging("INFO", quiet=True)
    log = get_logger("pipeline")
    log.info("staged one")
    log.error("promotion failed")

    out, err = capsys.readouterr()
    assert out == ""
    assert "staged one" not in err
    assert "ERROR [-] promotion failed" in err


def test_file_handler_writes_context(tmp_path, reset_logger):
    setup_logging("DEBUG", tmp_path / "logs", quiet=True)
    image_logger(get_logger("previews"), "img-9", "sess-1").info("preview ready")
    for h in logging.getLogger(LOGGER_NAME).handlers:
        h.flush()

    text = (tmp_path / "logs" / "studio-ingest.log").read_text()
    assert "[img-9:sess-1] studio_ingest.previews: preview ready" in text
