# /filesync.py
"""
File Sync (polling mirror)
- Mirrors files from one or more source trees into destination trees.
- Mappings come from a JSON config file (source root, destination root,
  include pattern, ignore pattern, cleanup patterns).
- Polls on a fixed tick; no filesystem events, no state on disk.
- Detects changes via SHA-256 content hashes, copies only what changed.
- Mark-and-sweep over the watch registry: a mirrored file whose source
  disappeared is deleted on the next cycle.
- Optional cleanup pass on startup removes destination directories
  matching the cleanup patterns.
- Styled console output:
  - COPY green
  - DELETE orange
  - CLEAN light brown
  - failures / errors red
- Log file (optional) is always plain (no color codes).

Usage
  pip install colorama
  filesync -c filesync.json
  filesync -c filesync.json -v --tick 1000
  filesync -c filesync.json -o --no-clean
"""

from __future__ import annotations

import argparse
import base64
import datetime as dt
import enum
import hashlib
import json
import logging
import os
import posixpath
import shutil
import sys
import time
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from colorama import just_fix_windows_console

DEFAULT_TICK_MS = 3000

LOGGER_NAME = "filesync"


# -------------------------
# Errors
# -------------------------

class FilesyncError(Exception):
    """Base class for all filesync errors."""


class ConfigError(FilesyncError):
    """Malformed or unreadable configuration. Fatal before any scanning."""


class SourceNotFound(FilesyncError):
    """A mapping's source root does not exist."""

    def __init__(self, index: int, root: Path):
        super().__init__(f"Source dir could not be found (mapping {index}): {root}")
        self.index = index
        self.root = root


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    YELLOW = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "DELETE": Ansi.ORANGE,
    "CLEAN": Ansi.YELLOW,
    "NOT_FOUND": Ansi.ORANGE,
}


class ColorizingFormatter(logging.Formatter):
    """Paints the action tag of log_action records; any error tag is red."""

    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        action = getattr(record, "action", None)
        if not self.use_color or not action:
            return base

        color = Ansi.RED if record.levelno >= logging.ERROR else ACTION_COLORS.get(action)
        if not color:
            return base
        tag = f"{action} |"
        return base.replace(tag, f"{color}{action}{Ansi.RESET} |", 1)


def _today_log_name(prefix: str = "filesync") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """
    Console handler always; file handler only when a log dir is given.
    Without verbose the console shows warnings and errors only, the log
    file always gets everything from INFO up.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO if verbose else logging.WARNING)
    ch.setFormatter(ColorizingFormatter(use_color=sys.stdout.isatty(), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        fh.setLevel(logging.INFO)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(logger: logging.Logger, action: str, message: str, level: int = logging.INFO) -> None:
    logger.log(level, "%s | %s", action, message, extra={"action": action})


class Reporter:
    """
    Narrow event interface between the sync core and logging.
    Whether an event is shown is decided by the logger's handlers, never here.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def copied(self, src: Path, dst: Path) -> None:
        log_action(self.logger, "COPY", f"{src} -> {dst}")

    def copy_failed(self, src: Path, dst: Path, error: Exception) -> None:
        log_action(self.logger, "COPY_FAIL", f"{src} -> {dst} | {error}", level=logging.ERROR)

    def not_found(self, src: Path) -> None:
        log_action(self.logger, "NOT_FOUND", f"could not open/find: {src}", level=logging.WARNING)

    def deleted(self, dst: Path) -> None:
        log_action(self.logger, "DELETE", str(dst))

    def delete_failed(self, dst: Path, error: Exception) -> None:
        log_action(self.logger, "DELETE_FAIL", f"{dst} | {error}", level=logging.ERROR)

    def kept_shared(self, dst: Path) -> None:
        log_action(self.logger, "DELETE", f"kept {dst}, still mirrored by another mapping")

    def source_missing(self, index: int, root: Path) -> None:
        log_action(self.logger, "SOURCE_MISSING", f"mapping {index} skipped, source dir not found: {root}", level=logging.ERROR)

    def cleaned(self, path: Path) -> None:
        log_action(self.logger, "CLEAN", str(path))

    def clean_failed(self, path: Path, error: Exception) -> None:
        log_action(self.logger, "CLEAN_FAIL", f"{path} | {error}", level=logging.ERROR)

    def scan_error(self, path: Path, error: Exception) -> None:
        log_action(self.logger, "SCAN_ERROR", f"{path} | {error}", level=logging.ERROR)


# -------------------------
# Pattern matching
# -------------------------

class SegmentKind(enum.Enum):
    LITERAL = "literal"
    DIRECTORY_SPAN = "directory_span"
    FILE_SUFFIX = "file_suffix"


@dataclass(frozen=True)
class Segment:
    kind: SegmentKind
    text: str


def classify_segment(text: str) -> Segment:
    if text.startswith("**"):
        return Segment(SegmentKind.DIRECTORY_SPAN, text)
    if text.startswith("*."):
        return Segment(SegmentKind.FILE_SUFFIX, text)
    return Segment(SegmentKind.LITERAL, text)


def parse_pattern(pattern: str) -> list[Segment]:
    return [classify_segment(part) for part in pattern.split("/")]


def literal_prefix(segments: Sequence[Segment]) -> str:
    """Join the literal segments, dropping both wildcard kinds."""
    return "/".join(s.text for s in segments if s.kind is SegmentKind.LITERAL)


def matches(pattern: str, path: str) -> bool:
    """
    Match a path against an include/ignore/cleanup pattern.

    Patterns are evaluated per segment:
    - with literal directory segments, those segments (joined by "/") must
      appear in the path; a trailing "*.ext" segment is then matched against
      the file name only, anything else is a match already.
    - "**/<name>" without literal segments matches the file name against <name>.
    - everything else is a plain shell glob over the whole path ("*" spans "/").
    """
    if not pattern or not path:
        return False

    path = path.replace("\\", "/")
    segments = parse_pattern(pattern)

    if len(segments) > 1:
        literals = literal_prefix(segments)
        if any(s.kind is SegmentKind.LITERAL for s in segments):
            if literals in path:
                last = segments[-1]
                if last.kind is SegmentKind.FILE_SUFFIX:
                    return fnmatchcase(posixpath.basename(path), last.text)
                return True
        elif segments[0].kind is SegmentKind.DIRECTORY_SPAN:
            return fnmatchcase(posixpath.basename(path), segments[-1].text)

    return fnmatchcase(path, pattern)


# -------------------------
# Config
# -------------------------

@dataclass(frozen=True)
class Mapping:
    src_root: Path
    dst_root: Path
    include: str = ""
    exclude: str = ""
    cleanup_patterns: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncConfig:
    mappings: tuple[Mapping, ...]


@dataclass(frozen=True)
class RunConfig:
    config_path: Optional[Path]
    run_once: bool
    verbose: bool
    no_clean: bool
    tick_ms: int
    log_dir: Optional[Path]


def _require_str(raw: dict, key: str, index: int, default: Optional[str] = None) -> str:
    value = raw.get(key, default)
    if value is None:
        raise ConfigError(f"Mapping {index}: '{key}' is required")
    if not isinstance(value, str):
        raise ConfigError(f"Mapping {index}: '{key}' must be a string, got {type(value).__name__}")
    return value


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def parse_mapping(raw: object, index: int, base_dir: Path) -> Mapping:
    if not isinstance(raw, dict):
        raise ConfigError(f"Mapping {index}: expected an object, got {type(raw).__name__}")

    src = _require_str(raw, "srcRoot", index)
    dst = _require_str(raw, "dstRoot", index)
    if not src.strip() or not dst.strip():
        raise ConfigError(f"Mapping {index}: 'srcRoot' and 'dstRoot' must not be empty")

    cleanup = raw.get("cleanupPatterns") or []
    if not isinstance(cleanup, list) or not all(isinstance(p, str) for p in cleanup):
        raise ConfigError(f"Mapping {index}: 'cleanupPatterns' must be a list of strings")

    src_root = (base_dir / Path(src).expanduser()).resolve()
    dst_root = (base_dir / Path(dst).expanduser()).resolve()
    if src_root == dst_root:
        raise ConfigError(f"Mapping {index}: source and destination must be different: {src_root}")
    if _is_subpath(dst_root, src_root):
        raise ConfigError(f"Mapping {index}: destination must NOT be inside source (would cause loops): {dst_root}")
    if _is_subpath(src_root, dst_root):
        raise ConfigError(f"Mapping {index}: source must NOT be inside destination: {src_root}")

    return Mapping(
        src_root=src_root,
        dst_root=dst_root,
        include=_require_str(raw, "files", index, default=""),
        exclude=_require_str(raw, "ignored", index, default=""),
        cleanup_patterns=tuple(cleanup),
    )


def parse_config(payload: object, base_dir: Optional[Path] = None) -> SyncConfig:
    base_dir = base_dir or Path.cwd()
    if not isinstance(payload, dict):
        raise ConfigError("Config must be a JSON object with a 'mappings' list")

    raw_mappings = payload.get("mappings", payload.get("Mappings"))
    if not isinstance(raw_mappings, list):
        raise ConfigError("Config must contain a 'mappings' list")

    return SyncConfig(mappings=tuple(parse_mapping(raw, i, base_dir) for i, raw in enumerate(raw_mappings)))


def load_config(path: Path, base_dir: Optional[Path] = None) -> SyncConfig:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Could not read config file {path}. Check if valid JSON: {e}") from e
    return parse_config(payload, base_dir)


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="filesync", description="Mirror files from source trees to destination trees.")
    p.add_argument("-c", "--config", type=str, default=None, help="Path to the JSON config file.")
    p.add_argument("-o", "--once", action="store_true", help="Run a single cycle and exit.")
    p.add_argument("-v", "--verbose", action="store_true", help="Log every copy/delete to the terminal.")
    p.add_argument("--no-clean", action="store_true", help="Skip the cleanup pass on startup.")
    p.add_argument("--tick", type=int, default=DEFAULT_TICK_MS, help="Milliseconds between scans.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    return p.parse_args(argv)


def build_run_config(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        config_path=Path(args.config).expanduser().resolve() if args.config else None,
        run_once=bool(args.once),
        verbose=bool(args.verbose),
        no_clean=bool(args.no_clean),
        tick_ms=max(0, int(args.tick)),
        log_dir=Path(args.log_dir).expanduser().resolve() if args.log_dir else None,
    )


# -------------------------
# Watch registry
# -------------------------

class EntryState(enum.Enum):
    FRESH = "fresh"
    CONFIRMED = "confirmed"
    STALE = "stale"


@dataclass
class WatchEntry:
    path: Path
    absolute_path: Path
    destination: Path
    mtime: float = 0.0
    digest: str = ""
    dirty: bool = False
    state: EntryState = EntryState.FRESH

    @property
    def observed(self) -> bool:
        return self.state is not EntryState.STALE


RegistryKey = tuple[int, str]


def registry_key(index: int, destination: Path) -> RegistryKey:
    return (index, str(destination))


class WatchRegistry:
    """Live watch state, keyed by (mapping index, destination path)."""

    def __init__(self):
        self._entries: dict[RegistryKey, WatchEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: RegistryKey) -> bool:
        return key in self._entries

    def __iter__(self):
        return iter(list(self._entries.items()))

    def get(self, key: RegistryKey) -> Optional[WatchEntry]:
        return self._entries.get(key)

    def observe(self, key: RegistryKey, path: Path, absolute_path: Path, destination: Path) -> WatchEntry:
        """Fetch or create the entry for key and mark it seen in this cycle."""
        entry = self._entries.get(key)
        if entry is None:
            entry = WatchEntry(path=path, absolute_path=absolute_path, destination=destination)
            self._entries[key] = entry
        else:
            entry.state = EntryState.CONFIRMED
        return entry

    def confirm(self, key: RegistryKey) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.state is EntryState.STALE:
            entry.state = EntryState.CONFIRMED

    def stale_keys(self, skip_mappings: Iterable[int] = ()) -> list[RegistryKey]:
        skip = set(skip_mappings)
        return [k for k, e in self._entries.items() if e.state is EntryState.STALE and k[0] not in skip]

    def remove(self, key: RegistryKey) -> WatchEntry:
        return self._entries.pop(key)

    def rearm(self) -> None:
        for entry in self._entries.values():
            entry.state = EntryState.STALE

    def dirty_entries(self) -> list[WatchEntry]:
        return [e for _, e in sorted(self._entries.items()) if e.dirty]


# -------------------------
# Scanning + hashing
# -------------------------

def hash_file(path: Path) -> str:
    # whole file in memory; targets config/asset sized files
    digest = hashlib.sha256(path.read_bytes()).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")


def is_dot_file(path: str) -> bool:
    return posixpath.basename(path.replace("\\", "/")).startswith(".")


def should_sync(path: str, mapping: Mapping) -> bool:
    if is_dot_file(path):
        return False
    if mapping.exclude and matches(mapping.exclude, path):
        return False
    if not mapping.include:
        return True
    return matches(mapping.include, path)


def scan_mapping(registry: WatchRegistry, index: int, mapping: Mapping, reporter: Reporter) -> int:
    """
    Mark phase for one mapping. Returns the number of files observed.
    Raises SourceNotFound when the source root is missing.
    """
    root = mapping.src_root
    if not root.is_dir():
        raise SourceNotFound(index, root)

    observed = 0
    for src_path in sorted(root.rglob("*")):
        try:
            if not src_path.is_file():
                continue

            rel = src_path.relative_to(root)
            if not should_sync(rel.as_posix(), mapping):
                continue

            dst_path = mapping.dst_root / rel
            key = registry_key(index, dst_path)
            try:
                stat = src_path.stat()
                digest = hash_file(src_path)
            except OSError as e:
                # file exists and matched, keep its mirror; retry next cycle
                reporter.scan_error(src_path, e)
                registry.confirm(key)
                continue

            entry = registry.observe(key, rel, src_path.absolute(), dst_path)
            if entry.digest != digest:
                entry.digest = digest
                entry.dirty = True
            entry.mtime = stat.st_mtime
            observed += 1
        except OSError as e:
            reporter.scan_error(src_path, e)

    return observed


# -------------------------
# Reconcile + sync
# -------------------------

def reconcile(registry: WatchRegistry, reporter: Reporter, skip_mappings: Iterable[int] = ()) -> int:
    """
    Sweep phase. Removes every entry not observed since the last sweep and
    deletes its destination file (best effort), then re-arms the survivors.
    Entries of mappings in skip_mappings are left alone.

    A destination still held by a surviving entry of another mapping is not
    deleted; that entry is flagged dirty so the copy phase rewrites the file
    with its own content.
    """
    stale = registry.stale_keys(skip_mappings)
    swept = [registry.remove(key) for key in stale]
    owners = {str(e.destination): e for _, e in registry}

    for entry in swept:
        owner = owners.get(str(entry.destination))
        if owner is not None:
            owner.dirty = True
            reporter.kept_shared(entry.destination)
            continue
        try:
            entry.destination.unlink()
            reporter.deleted(entry.destination)
        except OSError as e:
            reporter.delete_failed(entry.destination, e)
    registry.rearm()
    return len(swept)


def sync_entry(entry: WatchEntry, reporter: Reporter) -> bool:
    """Copy one dirty entry. Returns True when a copy happened."""
    if not entry.dirty:
        return False

    src, dst = entry.absolute_path, entry.destination
    if not src.is_file():
        reporter.not_found(src)
        return False

    try:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)
    except FileNotFoundError:
        reporter.not_found(src)
        return False
    except OSError as e:
        reporter.copy_failed(src, dst, e)
        return False

    entry.dirty = False
    reporter.copied(src, dst)
    return True


@dataclass
class CycleSummary:
    observed: int = 0
    copied: int = 0
    deleted: int = 0
    not_copied: int = 0
    failed_mappings: dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed_mappings


def run_cycle(registry: WatchRegistry, mappings: Sequence[Mapping], reporter: Reporter) -> CycleSummary:
    """One poll: scan all mappings, sweep, then copy every dirty entry."""
    summary = CycleSummary()

    for index, mapping in enumerate(mappings):
        try:
            summary.observed += scan_mapping(registry, index, mapping, reporter)
        except SourceNotFound as e:
            reporter.source_missing(index, e.root)
            summary.failed_mappings[index] = str(e)

    summary.deleted = reconcile(registry, reporter, skip_mappings=summary.failed_mappings)

    for entry in registry.dirty_entries():
        if sync_entry(entry, reporter):
            summary.copied += 1
        else:
            summary.not_copied += 1

    if summary.copied or summary.deleted:
        reporter.logger.info("CYCLE: copied=%d deleted=%d", summary.copied, summary.deleted)
    return summary


# -------------------------
# Cleanup
# -------------------------

@dataclass
class CleanupSummary:
    removed: list[Path] = field(default_factory=list)
    failed: list[Path] = field(default_factory=list)


def matches_any(patterns: Iterable[str], path: str) -> bool:
    return any(p and matches(p, path) for p in patterns)


def collect_cleanup_dirs(mapping: Mapping) -> list[Path]:
    """Directories under the destination root matching a cleanup pattern."""
    root = mapping.dst_root
    patterns = [p for p in mapping.cleanup_patterns if p]
    if not patterns or not root.is_dir():
        return []

    queued: list[Path] = []
    for dirpath, dirnames, _ in os.walk(root):
        dirnames.sort()
        keep = []
        for name in dirnames:
            full = Path(dirpath) / name
            rel = full.relative_to(root).as_posix()
            if matches_any(patterns, rel):
                queued.append(full)
            else:
                keep.append(name)
        # matched dirs go away whole, no need to look inside
        dirnames[:] = keep
    return queued


def cleanup(mappings: Sequence[Mapping], reporter: Reporter) -> CleanupSummary:
    queue: list[Path] = []
    for mapping in mappings:
        queue.extend(collect_cleanup_dirs(mapping))

    summary = CleanupSummary()
    for path in queue:
        try:
            shutil.rmtree(path)
            summary.removed.append(path)
            reporter.cleaned(path)
        except OSError as e:
            summary.failed.append(path)
            reporter.clean_failed(path, e)
    return summary


# -------------------------
# Main
# -------------------------

def prepare_destinations(mappings: Sequence[Mapping], logger: logging.Logger) -> None:
    for mapping in mappings:
        if mapping.dst_root.exists():
            continue
        logger.warning("Destination root directory not found. Creating: %s", mapping.dst_root)
        try:
            mapping.dst_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log_action(logger, "SCAN_ERROR", f"could not create {mapping.dst_root} | {e}", level=logging.ERROR)


def run_loop(
    registry: WatchRegistry,
    mappings: Sequence[Mapping],
    reporter: Reporter,
    tick_sec: float,
    sleep: Optional[Callable[[float], None]] = None,
) -> None:
    """Runs cycles back to back with tick_sec pauses until interrupted."""
    sleep = sleep or time.sleep
    while True:
        run_cycle(registry, mappings, reporter)
        sleep(tick_sec)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    run = build_run_config(args)

    logger = setup_logger(run.log_dir, verbose=run.verbose)

    if run.config_path is None:
        logger.error("No config file has been specified. Use -c to supply one or -h to see available options.")
        return 2

    try:
        logger.info("Loading config: %s", run.config_path)
        config = load_config(run.config_path)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        logger.error("*** sync has stopped ***")
        return 2

    reporter = Reporter(logger)
    prepare_destinations(config.mappings, logger)
    if not run.no_clean:
        cleanup(config.mappings, reporter)

    registry = WatchRegistry()
    logger.info("Successfully started and running... (Ctrl+C to stop)")

    if run.run_once:
        summary = run_cycle(registry, config.mappings, reporter)
        return 0 if summary.ok else 1

    try:
        run_loop(registry, config.mappings, reporter, run.tick_ms / 1000.0)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
