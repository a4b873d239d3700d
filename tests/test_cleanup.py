"""Tests for the destination cleanup sweep."""

import logging
import shutil

from conftest import write
from filesync import Mapping, cleanup, collect_cleanup_dirs


def test_removes_matching_directories(dst, make_mapping, reporter):
    write(dst / "test" / "a.txt")
    write(dst / "pkg" / "test" / "b.txt")
    write(dst / "pkg" / "main" / "c.txt")
    write(dst / "keep.txt")

    summary = cleanup([make_mapping(cleanup_patterns=("**/test",))], reporter)

    assert sorted(p.relative_to(dst).as_posix() for p in summary.removed) == ["pkg/test", "test"]
    assert summary.failed == []
    assert not (dst / "test").exists()
    assert not (dst / "pkg" / "test").exists()
    assert (dst / "pkg" / "main" / "c.txt").exists()
    assert (dst / "keep.txt").exists()


def test_nested_matches_queued_once(dst, make_mapping):
    (dst / "test" / "inner" / "test").mkdir(parents=True)
    queued = collect_cleanup_dirs(make_mapping(cleanup_patterns=("**/test",)))
    assert queued == [dst / "test"]


def test_destination_root_itself_is_never_queued(dst, make_mapping):
    (dst / "sub").mkdir()
    assert collect_cleanup_dirs(make_mapping(cleanup_patterns=("*",))) == [dst / "sub"]


def test_empty_patterns_are_ignored(dst, make_mapping):
    (dst / "anything").mkdir()
    assert collect_cleanup_dirs(make_mapping(cleanup_patterns=("",))) == []


def test_missing_destination_root(tmp_path, reporter):
    m = Mapping(src_root=tmp_path, dst_root=tmp_path / "missing", cleanup_patterns=("**/test",))
    summary = cleanup([m], reporter)
    assert summary.removed == [] and summary.failed == []


def test_several_mappings_and_patterns(tmp_path, reporter):
    one, two = tmp_path / "one", tmp_path / "two"
    (one / "cache").mkdir(parents=True)
    (one / "test").mkdir()
    (two / "build" / "tmp").mkdir(parents=True)
    mappings = [
        Mapping(src_root=tmp_path, dst_root=one, cleanup_patterns=("**/cache", "**/test")),
        Mapping(src_root=tmp_path, dst_root=two, cleanup_patterns=("build/tmp",)),
    ]
    summary = cleanup(mappings, reporter)
    assert len(summary.removed) == 3
    assert (two / "build").exists()
    assert not (two / "build" / "tmp").exists()


def test_failure_does_not_stop_remaining(dst, make_mapping, reporter, monkeypatch, caplog):
    (dst / "a" / "test").mkdir(parents=True)
    (dst / "b" / "test").mkdir(parents=True)
    real_rmtree = shutil.rmtree

    def flaky_rmtree(path, *args, **kwargs):
        if "a" in path.parts:
            raise PermissionError("locked")
        return real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr("filesync.shutil.rmtree", flaky_rmtree)
    with caplog.at_level(logging.ERROR, logger="filesync_tests"):
        summary = cleanup([make_mapping(cleanup_patterns=("**/test",))], reporter)

    assert summary.failed == [dst / "a" / "test"]
    assert summary.removed == [dst / "b" / "test"]
    assert "CLEAN_FAIL" in caplog.text
    assert (dst / "a" / "test").exists()
