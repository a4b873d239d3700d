"""Shared fixtures for filesync tests."""

import logging
from pathlib import Path

import pytest

import filesync
from filesync import Mapping, Reporter, WatchRegistry

DATA_DIR = Path(__file__).parent / "data"


@pytest.fixture(autouse=True)
def _reset_filesync_logger():
    """main() installs handlers on the shared logger; drop them between tests."""
    yield
    logger = logging.getLogger(filesync.LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


@pytest.fixture
def reporter():
    return Reporter(logging.getLogger("filesync_tests"))


@pytest.fixture
def registry():
    return WatchRegistry()


@pytest.fixture
def src(tmp_path):
    p = tmp_path / "A"
    p.mkdir()
    return p


@pytest.fixture
def dst(tmp_path):
    p = tmp_path / "B"
    p.mkdir()
    return p


@pytest.fixture
def make_mapping(src, dst):
    def _make(**overrides):
        values = {"src_root": src, "dst_root": dst}
        values.update(overrides)
        return Mapping(**values)
    return _make


def write(path: Path, content: str = "x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
