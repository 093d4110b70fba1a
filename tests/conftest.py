"""Shared fixtures: a throwaway data path and fake ssh/rsync commands."""

import sys
import textwrap
import time
from typing import Callable, List

import pytest
from loguru import logger

import subtree_mirror as sm

GRACE = 0.3


def python_cmd(script: str) -> List[str]:
    return [sys.executable, "-c", textwrap.dedent(script)]


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


# rsync stand-ins -------------------------------------------------------------

PROGRESS_SCRIPT = """
    import sys
    sys.stdout.write("          1,234  42%    1.50MB/s    0:00:12 (xfr#1, to-chk=0/1)\\n")
    sys.stdout.flush()
    sys.stderr.write("receiving incremental file list\\n")
"""

FAILING_SCRIPT = """
    import sys
    sys.stderr.write("rsync error: some files could not be transferred\\n")
    sys.exit(23)
"""

SLOW_SCRIPT = """
    import time
    while True:
        time.sleep(0.05)
"""

# ignores SIGTERM; touches argv[1] once the handler is in place
STUBBORN_SCRIPT = """
    import signal, sys, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    open(sys.argv[1], "w").close()
    while True:
        time.sleep(0.05)
"""

# forks a child that shares its output pipes, like rsync does with ssh
FORKING_SCRIPT = """
    import subprocess, sys, time
    subprocess.Popen([sys.executable, "-c", "import time; time.sleep(20)"])
    while True:
        time.sleep(0.05)
"""

# leaves a child in its own session holding the output pipes, writes its pid to argv[1], exits 0
ESCAPED_CHILD_SCRIPT = """
    import subprocess, sys
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"], start_new_session=True)
    with open(sys.argv[1], "w") as f:
        f.write(str(child.pid))
"""


@pytest.fixture
def data_path(tmp_path):
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def cfg(data_path, tmp_path):
    return sm.AppConfig(
        data_path=str(data_path),
        remote_host="nas.local",
        remote_port=2222,
        remote_user="mirror",
        rsync_ssh_key=str(tmp_path / "rsync_key"),
        ls_ssh_key=str(tmp_path / "ls_key"),
        known_hosts=str(tmp_path / "known_hosts"),
    )


@pytest.fixture
def remote_listing(monkeypatch):
    """Replace the ssh listing with a script that prints the given lines."""

    def install(lines, returncode=0, stderr_lines=()):
        script = f"""
            import sys
            for line in {list(lines)!r}:
                print(line)
            for line in {list(stderr_lines)!r}:
                print(line, file=sys.stderr)
            sys.exit({returncode})
        """
        monkeypatch.setattr(sm, "build_ls_command", lambda cfg: python_cmd(script))

    return install


@pytest.fixture
def fake_rsync(monkeypatch):
    """Replace rsync with a script; returns the list of (path, dest) it was started with."""
    calls = []

    def install(script, *extra_args):
        def build(cfg, path, dest):
            calls.append((path, dest))
            return python_cmd(script) + [str(a) for a in extra_args]

        monkeypatch.setattr(sm, "build_rsync_command", build)
        return calls

    return install


@pytest.fixture
def registry():
    return sm.SyncJobRegistry()


@pytest.fixture
def supervisor(cfg, registry):
    return sm.SyncProcessSupervisor(cfg, registry, grace_period=GRACE, poll_interval=0.02)


@pytest.fixture
def manager(cfg, registry, supervisor):
    m = sm.SyncJobManager(cfg, registry=registry, supervisor=supervisor)
    yield m
    m.shutdown(timeout=GRACE + 5)


@pytest.fixture
def log_messages():
    """Collect formatted log lines emitted while the test runs."""
    messages = []
    handler_id = logger.add(lambda m: messages.append(str(m)), level="DEBUG", format="{level} {message}")
    yield messages
    logger.remove(handler_id)
