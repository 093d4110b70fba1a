#!/usr/bin/env python3
"""
Subtree Mirror

Run this on the machine that should receive the copies.
Features:
- Directory status: the remote tree (listed over SSH) diffed against the local
  data path. A directory only counts as synced when it and every remote
  directory below it exist locally.
- Start a sync per directory (rsync over SSH, --info=progress2 parsed live)
- Syncs of overlapping subtrees (same directory, or one inside the other)
  are refused while one of them runs
- Cancel: SIGTERM, 5s grace period, then SIGKILL
- Remove a local copy once no overlapping sync is running
- JSON logs (loguru)

Start:
  DATA_PATH=/data REMOTE_HOST=nas REMOTE_USER=mirror \\
  RSYNC_SSH_KEY=~/.ssh/rsync LS_SSH_KEY=~/.ssh/ls KNOWN_HOSTS=~/.ssh/known_hosts \\
  subtree-mirror --port 8080

The listing key is expected to be restricted on the remote side to a forced
command that prints one absolute directory path per line, parents first,
e.g. `find /data -type d`. Set LS_COMMAND to send the command explicitly.
"""

from __future__ import annotations

import argparse
import itertools
import json
import os
import posixpath
import re
import shutil
import signal
import subprocess
import sys
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, IO, List, Optional, Set, Tuple

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

# =============================================================================
# Helpers
# =============================================================================

CANCEL_GRACE_SEC = 5.0
CANCEL_POLL_SEC = 0.2
READER_JOIN_SEC = 1.0
MIN_RSYNC_VERSION = (3, 1, 0)  # --info=progress2


def now_ts() -> float:
    return time.time()


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def normalize_tree_path(path: str) -> str:
    """
    Slash-rooted, normalized form used as the key in every tree and in the
    job registry: "a/b/" -> "/a/b", "" -> "/".
    """
    return posixpath.normpath("/" + path.lstrip("/"))


def parse_rsync_version(text: str) -> Optional[Tuple[int, int, int]]:
    """
    Parse output of `rsync --version` and return (major, minor, patch) if possible.
    Example first line: "rsync  version 3.2.7  protocol version 31"
    """
    m = re.search(r"rsync\s+version\s+v?(\d+)\.(\d+)\.(\d+)", text)
    if not m:
        return None
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def get_rsync_version() -> Optional[Tuple[int, int, int]]:
    rsync_path = shutil.which("rsync")
    if not rsync_path:
        return None
    try:
        r = subprocess.run([rsync_path, "--version"], capture_output=True, text=True, check=False)
    except OSError:
        return None
    return parse_rsync_version((r.stdout or "") + "\n" + (r.stderr or ""))


def supports_info_progress2(ver: Optional[Tuple[int, int, int]]) -> bool:
    if not ver:
        return False
    return ver >= MIN_RSYNC_VERSION


def human_shell_quote(s: str) -> str:
    """
    Minimal quoting, enough for rsync's own splitting of the -e command.
    """
    if re.search(r"[^\w@%+=:,./~-]", s):
        return "'" + s.replace("'", "'\"'\"'") + "'"
    return s


def start_thread(target: Callable[..., Any], *args: Any, name: str) -> threading.Thread:
    t = threading.Thread(target=target, args=args, name=name, daemon=True)
    t.start()
    return t


def forward_lines(stream: IO[str], log: Any) -> None:
    """Send every non-empty line of a diagnostics stream to the log."""
    for line in stream:
        line = line.rstrip()
        if line:
            log.info(line)


# =============================================================================
# Errors
# =============================================================================

class MirrorError(Exception):
    """Base exception for all subtree-mirror errors."""
    pass


class ConfigError(MirrorError):
    """Raised when configuration cannot be loaded or is incomplete."""
    pass


class ValidationError(MirrorError):
    """Raised for unknown or invalid directory paths."""
    pass


class ConflictError(MirrorError):
    """Raised when a running sync overlaps the requested subtree."""
    pass


class FilesystemError(MirrorError):
    """Local filesystem walk, mkdir or delete failure."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class CommandError(MirrorError):
    """An external command could not be started, failed mid-stream or exited non-zero."""

    def __init__(self, message: str, cmd: Optional[List[str]] = None, returncode: Optional[int] = None):
        self.cmd = cmd
        self.returncode = returncode
        super().__init__(message)


class ProgressParseError(MirrorError):
    """One rsync progress token could not be parsed."""

    def __init__(self, token: str, reason: str):
        self.token = token
        self.reason = reason
        super().__init__(f"cannot parse progress token {token!r}: {reason}")


# =============================================================================
# Config
# =============================================================================

INT_FIELDS = {"port", "remote_port"}


@dataclass
class AppConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    data_path: str = ""
    remote_host: str = ""
    remote_port: int = 22
    remote_user: str = ""
    remote_root: str = ""
    rsync_ssh_key: str = ""
    ls_ssh_key: str = ""
    known_hosts: str = ""
    ls_command: str = ""

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def load(path: Optional[Path] = None) -> "AppConfig":
        """Defaults, overlaid with a JSON config file when one is given."""
        if path is None:
            return AppConfig()
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a JSON object")
        return AppConfig().merged(data)

    def merged(self, values: Dict[str, Any]) -> "AppConfig":
        """Copy with the non-None entries of `values` applied on top."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(unknown)}")

        changes: Dict[str, Any] = {}
        for name, value in values.items():
            if value is None:
                continue
            if name in INT_FIELDS:
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    raise ConfigError(f"{name} must be an integer, got {value!r}") from None
            else:
                value = str(value)
            changes[name] = value
        return replace(self, **changes)

    def validate(self) -> List[str]:
        reasons = []
        if not self.data_path:
            reasons.append("data_path must be specified")
        if not self.remote_host:
            reasons.append("remote_host must be specified")
        if not self.remote_user:
            reasons.append("remote_user must be specified")
        if not 0 < self.remote_port < 65536:
            reasons.append(f"remote_port out of range: {self.remote_port}")
        if not 0 < self.port < 65536:
            reasons.append(f"port out of range: {self.port}")

        for name in ("rsync_ssh_key", "ls_ssh_key", "known_hosts"):
            value = getattr(self, name)
            if not value:
                reasons.append(f"{name} must be specified")
            elif not Path(value).expanduser().exists():
                reasons.append(f"{name} does not exist: {Path(value).expanduser()}")
        return reasons


def env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    # DATA_PATH -> data_path
    return {f.name: environ.get(f.name.upper()) for f in fields(AppConfig)}


def load_config(args: argparse.Namespace, environ: Optional[Dict[str, str]] = None) -> AppConfig:
    """Defaults < JSON file (--config) < environment < command line flags."""
    environ = dict(os.environ) if environ is None else environ
    cfg = AppConfig.load(Path(args.config).expanduser() if args.config else None)
    cfg = cfg.merged(env_overrides(environ))
    return cfg.merged({f.name: getattr(args, f.name, None) for f in fields(AppConfig)})


def tools_diag() -> List[str]:
    reasons = []
    if shutil.which("ssh") is None:
        reasons.append("ssh not found in PATH")
    if shutil.which("rsync") is None:
        reasons.append("rsync not found in PATH")
    else:
        ver = get_rsync_version()
        if not supports_info_progress2(ver):
            found = ".".join(map(str, ver)) if ver else "unknown"
            reasons.append(f"rsync {found} does not support --info=progress2 (needs 3.1.0+)")
    return reasons


# =============================================================================
# Logging
# =============================================================================

def setup_logging(level: str = "INFO", sink: Any = None) -> None:
    """
    One JSON object per line on stdout. Structured fields travel in `extra`
    (logger.bind(path=...) or keyword arguments on the call).
    """
    logger.remove()
    try:
        logger.add(sink if sink is not None else sys.stdout, level=level.upper(), serialize=True)
    except ValueError as e:
        raise ConfigError(f"invalid log_level {level!r}: {e}") from e


# =============================================================================
# Commands (ssh listing + rsync transfer)
# =============================================================================

def ssh_options(cfg: AppConfig, key_path: str) -> List[str]:
    return [
        "-i", str(Path(key_path).expanduser()),
        "-p", str(cfg.remote_port),
        "-o", f"UserKnownHostsFile={Path(cfg.known_hosts).expanduser()}",
        "-o", "StrictHostKeyChecking=yes",
        "-o", "PasswordAuthentication=no",
    ]


def build_ssh_command(cfg: AppConfig) -> str:
    """The -e command rsync uses to reach the remote host."""
    return " ".join(human_shell_quote(p) for p in ["ssh", *ssh_options(cfg, cfg.rsync_ssh_key)])


def build_ls_command(cfg: AppConfig) -> List[str]:
    cmd = ["ssh", "-T", *ssh_options(cfg, cfg.ls_ssh_key), f"{cfg.remote_user}@{cfg.remote_host}"]
    if cfg.ls_command:
        cmd.append(cfg.ls_command)
    return cmd


def remote_to_tree_path(remote_root: str, remote_path: str) -> Optional[str]:
    """
    Map an absolute path printed by the remote listing onto the tree key.
    Returns None for paths outside remote_root.
    """
    path = normalize_tree_path(remote_path)
    if not remote_root:
        return path
    root = normalize_tree_path(remote_root)
    if root == "/":
        return path
    if path == root:
        return "/"
    if path.startswith(root + "/"):
        return path[len(root):]
    return None


def tree_to_remote_path(remote_root: str, path: str) -> str:
    if not remote_root:
        return path
    return posixpath.normpath(posixpath.join(normalize_tree_path(remote_root), path.lstrip("/")))


def local_destination(cfg: AppConfig, path: str) -> Path:
    """
    Directory rsync copies into. rsync recreates the last path component
    itself, so this is the parent of the mirrored directory (or the data
    path when the whole tree is mirrored).
    """
    target = Path(cfg.data_path) / path.lstrip("/")
    if path == "/":
        return target
    return target.parent


def build_rsync_command(cfg: AppConfig, path: str, dest: Path) -> List[str]:
    remote = tree_to_remote_path(cfg.remote_root, path)
    if path == "/":
        # trailing slash: copy the contents, not the directory itself
        remote = remote.rstrip("/") + "/"
    return [
        "rsync",
        "-a",
        "--info=progress2",
        "-e",
        build_ssh_command(cfg),
        f"{cfg.remote_user}@{cfg.remote_host}:{remote}",
        str(dest),
    ]


# =============================================================================
# Tree building
# =============================================================================

@dataclass
class DirectoryNode:
    path: str
    name: str
    parent: Optional[str] = None
    synced: bool = False
    children: Dict[str, str] = field(default_factory=dict)


Tree = Dict[str, DirectoryNode]


def add_node(tree: Tree, path: str, name: str, synced: bool) -> DirectoryNode:
    """
    Insert a node and link it to its parent, if the parent is already in the
    tree. Children and parents refer to each other by path only.
    """
    parent_key = posixpath.dirname(path)
    parent = tree.get(parent_key) if parent_key != path else None
    node = DirectoryNode(path=path, name=name, parent=parent.path if parent else None, synced=synced)
    if parent is not None:
        parent.children[name] = path
    tree[path] = node
    return node


def mark_unsynced(tree: Tree, path: str) -> None:
    """Flag a node and every ancestor up to the root as not synced."""
    key: Optional[str] = path
    while key is not None:
        node = tree[key]
        node.synced = False
        key = node.parent


def build_local_tree(root_path: str) -> Tree:
    """
    Walk the local data path, directories only. Symlinked directories are
    neither listed nor followed. Any walk error aborts the whole build.
    """
    root = os.path.abspath(root_path)
    tree: Tree = {}

    def on_error(err: OSError) -> None:
        raise FilesystemError(f"walk dir {err.filename}: {err.strerror or err}", path=err.filename) from err

    for dirpath, dirnames, _ in os.walk(root, onerror=on_error):
        rel = os.path.relpath(dirpath, root)
        path = "/" if rel == "." else "/" + rel.replace(os.sep, "/")
        add_node(tree, path, os.path.basename(dirpath), synced=False)
        dirnames[:] = [d for d in dirnames if not os.path.islink(os.path.join(dirpath, d))]

    return tree


def build_remote_tree(cfg: AppConfig, local_tree: Tree) -> Tree:
    """
    Run the remote listing and build its tree. Every remote directory missing
    from `local_tree` is marked unsynced together with all of its ancestors.

    The listing must print parents before children; a child seen before its
    parent ends up with parent=None.
    """
    cmd = build_ls_command(cfg)
    logger.debug("ls cmd", cmd=cmd)

    try:
        # surrogateescape keeps undecodable names equal to what os.walk yields
        p = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="surrogateescape",
            bufsize=1,
        )
    except OSError as e:
        raise CommandError(f"start command: {e}", cmd=cmd) from e

    tree: Tree = {}
    with p:
        stderr_reader = start_thread(forward_lines, p.stderr, logger.bind(cmd="ls"), name="ls-stderr")
        try:
            for line in p.stdout:
                line = line.rstrip("\r\n")
                if not line:
                    continue
                path = remote_to_tree_path(cfg.remote_root, line)
                if path is None:
                    logger.warning("skipping remote path outside remote_root: {}", line)
                    continue
                add_node(tree, path, posixpath.basename(path), synced=True)
        except (OSError, ValueError) as e:
            p.kill()
            raise CommandError(f"read listing: {e}", cmd=cmd) from e
        finally:
            stderr_reader.join()
        rc = p.wait()

    if rc != 0:
        raise CommandError(f"remote listing exited with status {rc}", cmd=cmd, returncode=rc)

    for path in list(tree):
        if path not in local_tree:
            mark_unsynced(tree, path)
    return tree


def dir_status(cfg: AppConfig) -> List[Dict[str, Any]]:
    local_tree = build_local_tree(cfg.data_path)
    remote_tree = build_remote_tree(cfg, local_tree)
    return [{"path": n.path, "synced": n.synced} for _, n in sorted(remote_tree.items())]


# =============================================================================
# Progress parsing (rsync --info=progress2)
# =============================================================================

# "  1,234,567  45%   12.34MB/s    0:01:23 (xfr#1, to-chk=0/3)"
INT_RE = re.compile(r"[+-]?[0-9]+")
SIZE_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?) ?([kmgtp]?)(i?)(b?)", re.IGNORECASE)
SIZE_EXPONENTS = {"": 0, "k": 1, "m": 2, "g": 3, "t": 4, "p": 5}


def parse_int(text: str) -> int:
    if not INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    return int(text)


def parse_human_size(text: str) -> int:
    """
    "1.50MB" -> 1500000, "1.5MiB" -> 1572864, "512" -> 512.
    kB/MB/GB/... are powers of 1000, KiB/MiB/GiB/... powers of 1024.
    """
    m = SIZE_RE.fullmatch(text.strip())
    if not m:
        raise ValueError(f"invalid size: {text!r}")
    number, unit, binary, _ = m.groups()
    if binary and not unit:
        raise ValueError(f"invalid size: {text!r}")
    base = 1024 if binary else 1000
    return int(round(float(number) * base ** SIZE_EXPONENTS[unit.lower()]))


def parse_progress_token(token: str) -> Tuple[str, Any]:
    """Classify one whitespace-delimited progress token; returns (field, value)."""
    try:
        if token.endswith("%"):
            return "progress", parse_int(token[:-1])
        if token.endswith("/s"):
            return "speed", parse_human_size(token[:-2])
        if ":" in token:
            return "time_left", token
        return "downloaded", parse_int(token.replace(",", ""))
    except ValueError as e:
        raise ProgressParseError(token, str(e)) from e


def apply_progress_token(job: SyncJob, token: str, log: Any = logger) -> bool:
    try:
        name, value = parse_progress_token(token)
    except ProgressParseError as e:
        # rsync's "(xfr#1," / "to-chk=0/3)" annotations land here too
        log.debug("failed to parse progress token {!r}: {}", e.token, e.reason)
        return False
    job.update(**{name: value})
    return True


# =============================================================================
# Jobs
# =============================================================================

@dataclass
class SyncJob:
    path: str
    progress: int = 0
    speed: int = 0
    downloaded: int = 0
    time_left: str = ""
    cancel_requested: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def cancel(self) -> None:
        self.cancel_requested.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_requested.is_set()

    def update(self, **values: Any) -> None:
        with self._lock:
            for name, value in values.items():
                setattr(self, name, value)

    def view(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "path": self.path,
                "progress": self.progress,
                "speed": self.speed,
                "downloaded": self.downloaded,
                "time_left": self.time_left,
            }


def paths_overlap(a: str, b: str) -> bool:
    """True when a and b are the same directory or one lies inside the other."""
    if a == b:
        return True
    a_dir = a.rstrip("/") + "/"
    b_dir = b.rstrip("/") + "/"
    return a_dir.startswith(b_dir) or b_dir.startswith(a_dir)


class SyncJobRegistry:
    """
    Running syncs keyed by path. One lock covers every operation, so the
    overlap check and the insert in try_insert happen as a single step.

    Local removals in progress are held as reservations under the same
    overlap rules; they block syncs but are not listed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, SyncJob] = {}
        self._removals: Set[str] = set()

    def _find_overlap_locked(self, path: str) -> Optional[str]:
        for existing in itertools.chain(self._jobs, self._removals):
            if paths_overlap(existing, path):
                return existing
        return None

    def try_insert(self, path: str, job: SyncJob) -> bool:
        with self._lock:
            if self._find_overlap_locked(path) is not None:
                return False
            self._jobs[path] = job
            return True

    def try_reserve_removal(self, path: str) -> bool:
        with self._lock:
            if self._find_overlap_locked(path) is not None:
                return False
            self._removals.add(path)
            return True

    def release_removal(self, path: str) -> None:
        with self._lock:
            self._removals.discard(path)

    def remove(self, path: str) -> None:
        with self._lock:
            self._jobs.pop(path, None)

    def lookup(self, path: str) -> Optional[SyncJob]:
        with self._lock:
            return self._jobs.get(path)

    def find_overlap(self, path: str) -> Optional[str]:
        with self._lock:
            return self._find_overlap_locked(path)

    def jobs(self) -> List[SyncJob]:
        with self._lock:
            return list(self._jobs.values())

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            views = [job.view() for job in self._jobs.values()]
        return sorted(views, key=lambda v: v["path"], reverse=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


# =============================================================================
# Process supervision
# =============================================================================

def signal_group(p: subprocess.Popen, sig: int) -> None:
    """Signal rsync's whole process group; p must have been started in its own session."""
    try:
        os.killpg(p.pid, sig)
    except ProcessLookupError:
        pass


def stop_process(p: subprocess.Popen, grace_period: float = CANCEL_GRACE_SEC) -> None:
    """
    Two-phase stop: SIGTERM, wait out the full grace period, then SIGKILL.
    Signals go to the process group, so the ssh child rsync forks is stopped
    too. Both are no-ops once every process in the group is gone.
    """
    signal_group(p, signal.SIGTERM)
    time.sleep(grace_period)
    signal_group(p, signal.SIGKILL)


class SyncProcessSupervisor:
    """
    Owns one thread per job. The thread runs rsync to completion and removes
    the job from the registry when rsync exits, whatever the reason.

    Readers are joined for at most reader_timeout after rsync exits; a
    leftover child still holding the pipes does not keep the job registered.
    """

    def __init__(
        self,
        cfg: AppConfig,
        registry: SyncJobRegistry,
        grace_period: float = CANCEL_GRACE_SEC,
        poll_interval: float = CANCEL_POLL_SEC,
        reader_timeout: float = READER_JOIN_SEC,
    ) -> None:
        self.cfg = cfg
        self.registry = registry
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self.reader_timeout = reader_timeout
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []

    def _spawn(self, target: Callable[..., Any], *args: Any, name: str) -> threading.Thread:
        t = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._lock:
            self._threads = [other for other in self._threads if other.is_alive()]
            self._threads.append(t)
            t.start()
        return t

    def launch(self, job: SyncJob) -> threading.Thread:
        return self._spawn(self._run, job, name=f"sync:{job.path}")

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for all job and cancel-watcher threads; True when none is left running."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                self._threads = [t for t in self._threads if t.is_alive()]
                if not self._threads:
                    return True
                t = self._threads[0]
            if deadline is None:
                t.join()
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            t.join(remaining)

    def _run(self, job: SyncJob) -> None:
        log = logger.bind(path=job.path)
        try:
            self._transfer(job, log)
        except Exception:
            log.exception("sync crashed")
        finally:
            self.registry.remove(job.path)
            log.debug("sync removed from registry")

    def _transfer(self, job: SyncJob, log: Any) -> Optional[int]:
        dest = local_destination(self.cfg, job.path)
        try:
            ensure_dir(dest)
        except OSError as e:
            log.error("create path failed: {}", e)
            return None

        cmd = build_rsync_command(self.cfg, job.path, dest)
        log.debug("rsync cmd", cmd=cmd)

        try:
            p = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            log.error("start rsync failed: {}", e)
            return None

        exited = threading.Event()
        readers = [
            start_thread(self._read_stderr, p.stderr, log, name=f"stderr:{job.path}"),
            start_thread(self._read_progress, job, p.stdout, log, name=f"progress:{job.path}"),
        ]
        self._spawn(self._watch_cancellation, job, p, exited, log, name=f"cancel:{job.path}")
        log.info("sync started")

        rc = p.wait()
        exited.set()
        deadline = time.monotonic() + self.reader_timeout
        for reader in readers:
            reader.join(max(0.0, deadline - time.monotonic()))
        if any(reader.is_alive() for reader in readers):
            log.warning("rsync output still open after exit, not waiting for it")

        if rc == 0:
            log.info("sync finished")
        elif job.cancelled:
            log.warning("sync cancelled, rsync exit status {}", rc)
        else:
            log.error("rsync exited with status {}", rc)
        return rc

    def _read_stderr(self, stream: IO[str], log: Any) -> None:
        with stream:
            forward_lines(stream, log)

    def _read_progress(self, job: SyncJob, stream: IO[str], log: Any) -> None:
        with stream:
            for line in stream:
                for token in line.split():
                    apply_progress_token(job, token, log)

    def _watch_cancellation(self, job: SyncJob, p: subprocess.Popen, exited: threading.Event, log: Any) -> None:
        while not job.cancel_requested.wait(self.poll_interval):
            if exited.is_set():
                return
        log.info("cancel requested, stopping rsync")
        stop_process(p, self.grace_period)


# =============================================================================
# Orchestration
# =============================================================================

class SyncJobManager:
    """Entry point for the HTTP handlers; one instance per app."""

    def __init__(
        self,
        cfg: AppConfig,
        registry: Optional[SyncJobRegistry] = None,
        supervisor: Optional[SyncProcessSupervisor] = None,
    ) -> None:
        self.cfg = cfg
        self.registry = registry if registry is not None else SyncJobRegistry()
        self.supervisor = supervisor if supervisor is not None else SyncProcessSupervisor(cfg, self.registry)

    def list_dirs(self) -> List[Dict[str, Any]]:
        return dir_status(self.cfg)

    def start(self, path: str) -> SyncJob:
        path = normalize_tree_path(path)
        if path not in build_remote_tree(self.cfg, {}):
            raise ValidationError("invalid path")

        job = SyncJob(path=path)
        if not self.registry.try_insert(path, job):
            raise ConflictError("sync already started")

        logger.bind(path=path).info("sync accepted")
        self.supervisor.launch(job)
        return job

    def cancel(self, path: str) -> None:
        job = self.registry.lookup(normalize_tree_path(path))
        if job is not None:
            logger.bind(path=job.path).info("cancel signalled")
            job.cancel()

    def list(self) -> List[Dict[str, Any]]:
        return self.registry.snapshot()

    def remove(self, path: str) -> None:
        path = normalize_tree_path(path)
        # the data path itself is not removable
        if path == "/" or path not in build_local_tree(self.cfg.data_path):
            raise ValidationError("invalid path")
        # held until the delete is done, so no overlapping sync can start meanwhile
        if not self.registry.try_reserve_removal(path):
            raise ConflictError("sync in progress")

        target = Path(self.cfg.data_path) / path.lstrip("/")
        try:
            shutil.rmtree(target)
        except OSError as e:
            raise FilesystemError(f"remove {target}: {e}", path=str(target)) from e
        finally:
            self.registry.release_removal(path)
        logger.bind(path=path).info("local copy removed")

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Cancel every running sync and wait for the job threads to finish."""
        jobs = self.registry.jobs()
        for job in jobs:
            job.cancel()
        if jobs:
            logger.info("waiting for {} sync(s) to stop", len(jobs))
        return self.supervisor.join(timeout)


# =============================================================================
# FastAPI Models
# =============================================================================

class PathIn(BaseModel):
    path: str = Field(..., description="directory path below the mirrored root, e.g. /photos/2023")


ERROR_STATUS = [
    (ValidationError, 400),
    (ConflictError, 409),
]


def error_status(exc: MirrorError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


# =============================================================================
# FastAPI App
# =============================================================================

def create_app(cfg: AppConfig, manager: Optional[SyncJobManager] = None) -> FastAPI:
    manager = manager if manager is not None else SyncJobManager(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await run_in_threadpool(manager.shutdown, timeout=manager.supervisor.grace_period + 1)

    app = FastAPI(title="subtree-mirror", lifespan=lifespan)
    app.state.config = cfg
    app.state.manager = manager

    @app.exception_handler(MirrorError)
    async def mirror_error_handler(request: Request, exc: MirrorError) -> JSONResponse:
        return JSONResponse(status_code=error_status(exc), content={"error": str(exc)})

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("REQUEST_ERROR", uri=request.url.path, status=500, err=str(e))
            raise
        if response.status_code >= 500:
            logger.error("REQUEST_ERROR", uri=request.url.path, status=response.status_code)
        else:
            logger.info("REQUEST", uri=request.url.path, status=response.status_code)
        return response

    @app.get("/api/health")
    def api_health() -> Dict[str, Any]:
        return {"ok": True, "time": int(now_ts())}

    @app.get("/api/dirs")
    def api_dirs() -> Dict[str, Any]:
        return {"results": manager.list_dirs()}

    @app.get("/api/syncs")
    def api_syncs() -> Dict[str, Any]:
        return {"results": manager.list()}

    @app.post("/api/sync")
    def api_sync(req: PathIn) -> Dict[str, Any]:
        manager.start(req.path)
        return {}

    @app.post("/api/cancel")
    def api_cancel(req: PathIn) -> Dict[str, Any]:
        manager.cancel(req.path)
        return {}

    @app.post("/api/remove")
    def api_remove(req: PathIn) -> Dict[str, Any]:
        manager.remove(req.path)
        return {}

    return app


# =============================================================================
# Main
# =============================================================================

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mirror remote directory subtrees on demand.")
    parser.add_argument("--config", help="JSON config file (overridden by environment and flags)")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--data-path", dest="data_path", help="Local directory the remote tree is mirrored into")
    parser.add_argument("--remote-host", dest="remote_host")
    parser.add_argument("--remote-port", dest="remote_port", type=int)
    parser.add_argument("--remote-user", dest="remote_user")
    parser.add_argument("--remote-root", dest="remote_root",
                        help="Remote directory that maps to / (default: remote paths are used as-is)")
    parser.add_argument("--rsync-ssh-key", dest="rsync_ssh_key")
    parser.add_argument("--ls-ssh-key", dest="ls_ssh_key")
    parser.add_argument("--known-hosts", dest="known_hosts")
    parser.add_argument("--ls-command", dest="ls_command",
                        help="Remote listing command (default: rely on a forced command for the ls key)")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_arg_parser().parse_args(argv)
    try:
        cfg = load_config(args)
        setup_logging(cfg.log_level)
    except ConfigError as e:
        logger.error("config error: {}", e)
        sys.exit(1)

    reasons = cfg.validate() + tools_diag()
    if reasons:
        logger.error("config error", reasons=reasons)
        sys.exit(1)

    app = create_app(cfg)

    import uvicorn
    logger.info("listen", host=cfg.host, port=cfg.port)
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level="warning")


if __name__ == "__main__":
    main()
