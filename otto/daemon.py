"""Otto daemon: PID file, signals and the monitor loop thread.

``otto daemon start`` re-executes ``otto daemon run`` as a detached child. The
running daemon writes ``{state_dir}/ottod.pid`` and logs to
``{state_dir}/logs/ottod.log``. SIGTERM/SIGINT stop it, SIGUSR1 triggers an
immediate poll.
"""

import logging
import os
import signal
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from otto.config import AppConfig
from otto.llm import LLMClient, make_cursor_cli_client
from otto.logging import OttoLogging
from otto.provider import Registry, build_registry
from otto.services.comment_evaluator import CommentEvaluator
from otto.services.conflicts import ConflictResolver
from otto.services.fixer import Fixer
from otto.services.monitor import MonitorLoop
from otto.services.workdir import WorkdirResolver
from otto.store import PRStore

PID_FILE = "ottod.pid"
LOG_FILE = "logs/ottod.log"
STOP_TIMEOUT = 10.0

LOG = logging.getLogger("otto.daemon")


def pid_path(config: AppConfig) -> Path:
    return config.server.state_path / PID_FILE


def log_path(config: AppConfig) -> Path:
    return config.server.state_path / LOG_FILE


def write_pid(path: Path, pid: int) -> None:
    """Write the PID file atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{pid}\n")
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def read_pid(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def is_running(path: Path) -> int | None:
    """PID of the live daemon, or None. A stale PID file is removed."""
    pid = read_pid(path)
    if pid is None:
        if path.exists():
            path.unlink(missing_ok=True)
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        LOG.info("Removing stale PID file %s (pid %s)", path, pid)
        path.unlink(missing_ok=True)
        return None
    except PermissionError:
        # Alive but owned by another user
        return pid
    return pid


def start_daemon(config: AppConfig, config_path: Path | None = None) -> int:
    """Spawn a detached ``otto daemon run``; returns its PID."""
    path = pid_path(config)
    pid = is_running(path)
    if pid is not None:
        raise RuntimeError(f"daemon already running (pid {pid})")

    cmd = [sys.executable, "-m", "otto.main"]
    if config_path is not None:
        cmd += ["--config", str(config_path)]
    cmd += ["daemon", "run"]
    logfile = log_path(config)
    logfile.parent.mkdir(parents=True, exist_ok=True)
    with open(os.devnull, "rb") as devnull_in, open(os.devnull, "wb") as devnull_out:
        proc = subprocess.Popen(
            cmd,
            stdin=devnull_in,
            stdout=devnull_out,
            stderr=devnull_out,
            start_new_session=True,
            close_fds=True,
        )
    write_pid(path, proc.pid)
    LOG.info("Daemon started (pid %s), log: %s", proc.pid, logfile)
    return proc.pid


def stop_daemon(config: AppConfig, timeout: float = STOP_TIMEOUT) -> bool:
    """SIGTERM the daemon and wait for it to exit. False if it was not running."""
    path = pid_path(config)
    pid = is_running(path)
    if pid is None:
        return False
    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            path.unlink(missing_ok=True)
            return True
        time.sleep(0.2)
    raise TimeoutError(f"daemon (pid {pid}) did not exit within {timeout:.0f}s")


def trigger_poll(config: AppConfig) -> bool:
    """Ask a running daemon to poll now (SIGUSR1). False if none is running."""
    pid = is_running(pid_path(config))
    if pid is None:
        return False
    os.kill(pid, signal.SIGUSR1)
    return True


@dataclass
class DaemonContext:
    """Everything the running daemon shares, built once at startup."""

    config: AppConfig
    registry: Registry
    store: PRStore
    llm: LLMClient
    shutdown: threading.Event = field(default_factory=threading.Event)
    poll_trigger: threading.Event = field(default_factory=threading.Event)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_config(cls, config: AppConfig) -> "DaemonContext":
        shutdown = threading.Event()
        return cls(
            config=config,
            registry=build_registry(config, cancel=shutdown),
            store=PRStore(config.pr.store_path),
            llm=make_cursor_cli_client(config, cancel=shutdown),
            shutdown=shutdown,
        )

    def build_monitor(self) -> MonitorLoop:
        workdirs = WorkdirResolver(self.config.repos)
        bot = self.config.bot
        return MonitorLoop(
            store=self.store,
            registry=self.registry,
            fixer=Fixer(self.store, self.llm, workdirs, bot.name, bot.email),
            evaluator=CommentEvaluator(self.store, self.llm, workdirs, bot.name, bot.email),
            conflicts=ConflictResolver(self.store, self.llm, workdirs, bot.name, bot.email),
            poll_interval=self.config.server.poll_interval_seconds,
            reap_after_hours=self.config.pr.reap_after_hours,
            shutdown=self.shutdown,
            poll_trigger=self.poll_trigger,
        )

    def uptime_seconds(self) -> float:
        return (datetime.now(UTC) - self.start_time).total_seconds()


def _install_signal_handlers(ctx: DaemonContext) -> None:
    def _stop(signum, frame):
        LOG.info("Received %s, shutting down", signal.Signals(signum).name)
        ctx.shutdown.set()
        # Wake the loop if it is waiting for the next poll
        ctx.poll_trigger.set()

    def _poll(signum, frame):
        ctx.poll_trigger.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGUSR1, _poll)


def run_daemon(config: AppConfig) -> int:
    """Foreground daemon: run the monitor until SIGTERM/SIGINT."""
    OttoLogging(config.logging, log_file=log_path(config)).setup()
    path = pid_path(config)
    pid = is_running(path)
    if pid is not None and pid != os.getpid():
        LOG.error("Daemon already running (pid %s)", pid)
        return 1
    write_pid(path, os.getpid())

    ctx = DaemonContext.from_config(config)
    LOG.info(
        "Otto daemon started | pid=%s | providers=%s | store=%s | interval=%ss",
        os.getpid(),
        ",".join(ctx.registry.names()) or "none",
        config.pr.store_path,
        config.server.poll_interval_seconds,
    )
    _install_signal_handlers(ctx)

    monitor = ctx.build_monitor()
    thread = threading.Thread(target=monitor.run, name="otto-monitor", daemon=True)
    thread.start()
    try:
        while thread.is_alive() and not ctx.shutdown.is_set():
            ctx.shutdown.wait(1.0)
        thread.join(config.server.shutdown_grace_seconds)
    finally:
        if read_pid(path) == os.getpid():
            path.unlink(missing_ok=True)

    if thread.is_alive():
        LOG.error(
            "Monitor did not stop within %ss, forcing exit", config.server.shutdown_grace_seconds
        )
        logging.shutdown()
        os._exit(1)
    LOG.info("Otto daemon stopped after %.0fs", ctx.uptime_seconds())
    return 0
