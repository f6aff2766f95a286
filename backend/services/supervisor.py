"""
Wallet daemon process supervisor.

Spawns walletd behind a pseudo-terminal so its interactive console can be read
line by line, watches that console for the few life-cycle markers the rest of
the service depends on, and reports process exit. Restarting is left to
whoever listens for ``close``.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import os
import pty
import struct
import sys
import termios
from pathlib import Path
from typing import Callable, Optional

from config import Settings, settings as default_settings
from models.events import EventName
from services.event_bus import EventBus
from services.health_monitor import HealthMonitor
from services.scheduler import DelayedCall
from services.walletd_rpc import WalletdRpcClient
from utils.logger import supervisor_logger as logger

# Console substrings printed by walletd that drive the life-cycle.
MARKER_LOADING = "Loading container"
MARKER_BAD_PASSWORD = "The password is wrong"
MARKER_LOADED = "Container loaded"
MARKER_FINISHED = "Wallet loading is finished"

_TERMINAL_ROWS = 30
_TERMINAL_COLS = 80
_READ_CHUNK = 4096


class ConfigurationError(ValueError):
    """The daemon cannot be started with the current settings."""


class WalletdSupervisor:
    """Owns the walletd child process."""

    def __init__(
        self,
        bus: EventBus,
        rpc: WalletdRpcClient,
        monitor: HealthMonitor,
        config: Settings = default_settings,
        halt: Callable[[int], None] = sys.exit,
    ):
        self.bus = bus
        self.rpc = rpc
        self.monitor = monitor
        self.config = config
        self._halt = halt
        self._process: Optional[asyncio.subprocess.Process] = None
        self._master_fd: Optional[int] = None
        self._partial = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._exit_task: Optional[asyncio.Task] = None
        self._kill_timer: Optional[DelayedCall] = None
        self._close_timer: Optional[DelayedCall] = None
        self._background: set[asyncio.Task] = set()
        self._halting = False

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    # ==================== ARGUMENTS ====================

    def build_args(self) -> list[str]:
        """Build the ordered walletd argument list.

        Raises:
            ConfigurationError: no RPC credential mode, or a missing container file.
        """
        cfg = self.config
        args: list[str] = []

        if cfg.WALLETD_CONFIG:
            args += ["--config", cfg.WALLETD_CONFIG]
        args += ["--bind-address", str(cfg.BIND_ADDRESS)]
        args += ["--bind-port", str(cfg.BIND_PORT)]

        if cfg.RPC_PASSWORD:
            args += ["--rpc-password", cfg.RPC_PASSWORD]
        elif cfg.RPC_LEGACY_SECURITY:
            args.append("--rpc-legacy-security")
        else:
            raise ConfigurationError(
                "Cannot start without either an RPC password or RPC Legacy Security Enabled"
            )

        if not cfg.CONTAINER_FILE:
            raise ConfigurationError("Cannot start without defining a container file")
        if not Path(cfg.CONTAINER_FILE).exists():
            raise ConfigurationError(
                "Wallet container file does not exist. Please check your path and try again"
            )
        args += ["--container-file", cfg.CONTAINER_FILE]

        if cfg.CONTAINER_PASSWORD:
            args += ["--container-password", cfg.CONTAINER_PASSWORD]
        else:
            self.bus.emit(
                EventName.WARNING,
                "No wallet container password defined. This may work... but you really should use a password",
            )

        if cfg.WALLETD_LOG_FILE:
            args += ["--log-file", cfg.WALLETD_LOG_FILE]
        args += ["--log-level", str(cfg.WALLETD_LOG_LEVEL)]
        if cfg.SYNC_FROM_ZERO:
            args.append("--sync-from-zero")

        args += ["--daemon-address", str(cfg.DAEMON_RPC_ADDRESS)]
        args += ["--daemon-port", str(cfg.DAEMON_RPC_PORT)]
        return args

    # ==================== LIFECYCLE ====================

    async def start(self) -> bool:
        """Validate settings and spawn walletd. Returns True when a process was spawned."""
        self.bus.emit(EventName.INFO, "Attempting to start walletd...")
        if self.running:
            self.bus.emit(EventName.WARNING, "walletd is already running")
            return False

        try:
            args = self.build_args()
        except ConfigurationError as e:
            self.bus.emit(EventName.ERROR, str(e))
            self.bus.emit(
                EventName.ERROR,
                "Could not build the walletd arguments... please check your config and try again",
            )
            return False

        try:
            process, master_fd = await self._spawn(args)
        except OSError as e:
            logger.error("Failed to spawn walletd", path=self.config.WALLETD_PATH, error=str(e))
            self.bus.emit(EventName.ERROR, f"Error in child process: {e}")
            self.bus.emit(EventName.DOWN)
            return False

        self._process = process
        self._partial = ""
        self._decoder.reset()
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None
        # A close still pending from the previous process is stale now.
        if self._close_timer is not None:
            self._close_timer.cancel()
            self._close_timer = None
        self.monitor.mark_starting()
        self._attach_output(master_fd)
        self._exit_task = asyncio.get_running_loop().create_task(self._watch_exit(process))

        command_line = " ".join([self.config.WALLETD_PATH, *args])
        logger.info("Spawned walletd", pid=process.pid)
        self.bus.emit(EventName.START, command_line)
        return True

    def stop(self) -> None:
        """Ask walletd to exit and force-kill it after a grace period.

        Safe to call repeatedly; only one kill is ever armed per process.
        """
        if self._process is None or self._kill_timer is not None:
            return
        self.write("exit")
        grace = self.config.RPC_TIMEOUT_SECONDS * 2
        self._kill_timer = DelayedCall(grace, self._kill)
        logger.info("Stopping walletd", pid=self._process.pid, grace_seconds=grace)

    def write(self, text: str) -> bool:
        """Send one line to the walletd console. No reply is awaited."""
        if self._master_fd is None:
            logger.warning("Console write ignored, walletd is not running", text=text)
            return False
        try:
            self._console_write(f"{text}\n".encode("utf-8"))
        except OSError as e:
            self.bus.emit(EventName.ERROR, f"Could not write to walletd console: {e}")
            return False
        return True

    def _kill(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            logger.warning("Force killing walletd", pid=process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                pass

    # ==================== PROCESS I/O ====================

    async def _spawn(self, args: list[str]) -> tuple[asyncio.subprocess.Process, int]:
        master_fd, slave_fd = pty.openpty()
        try:
            fcntl.ioctl(
                slave_fd,
                termios.TIOCSWINSZ,
                struct.pack("HHHH", _TERMINAL_ROWS, _TERMINAL_COLS, 0, 0),
            )
            process = await asyncio.create_subprocess_exec(
                self.config.WALLETD_PATH,
                *args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(Path.home()),
                env={**os.environ, "TERM": "xterm-color"},
                start_new_session=True,
            )
        except Exception:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        return process, master_fd

    def _console_write(self, data: bytes) -> None:
        os.write(self._master_fd, data)

    def _attach_output(self, master_fd: Optional[int]) -> None:
        self._master_fd = master_fd
        if master_fd is not None:
            asyncio.get_running_loop().add_reader(master_fd, self._on_readable)

    def _detach_output(self, drain: bool = False) -> None:
        fd, self._master_fd = self._master_fd, None
        if fd is None:
            return
        try:
            asyncio.get_running_loop().remove_reader(fd)
        except RuntimeError:
            pass
        try:
            if drain:
                self._drain(fd)
        finally:
            try:
                os.close(fd)
            except OSError:
                pass
        tail = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        if tail:
            self._handle_line(tail.rstrip("\r"))

    def _drain(self, fd: int) -> None:
        """Read whatever the terminal still buffers after the child has exited."""
        os.set_blocking(fd, False)
        while True:
            try:
                chunk = os.read(fd, _READ_CHUNK)
            except OSError:
                # EIO once the buffer is empty, EAGAIN if another holder keeps it open
                return
            if not chunk:
                return
            self._handle_output(chunk)

    def _on_readable(self) -> None:
        try:
            chunk = os.read(self._master_fd, _READ_CHUNK)
        except OSError:
            # EIO once the child side of the terminal is gone
            chunk = b""
        if not chunk:
            self._detach_output()
            return
        self._handle_output(chunk)

    def _handle_output(self, chunk: bytes) -> None:
        """Split a console chunk into lines, holding back an unterminated tail."""
        text = self._partial + self._decoder.decode(chunk)
        lines = text.split("\n")
        self._partial = lines.pop()
        for line in lines:
            self._handle_line(line.rstrip("\r"))

    def _handle_line(self, line: str) -> None:
        if not line.strip():
            return
        self.bus.emit(EventName.DATA, line)

        if MARKER_LOADING in line:
            self.bus.emit(EventName.INFO, "walletd is loading the wallet container...")
        elif MARKER_BAD_PASSWORD in line:
            self.bus.emit(EventName.ERROR, "THE PASSWORD FOR THE WALLET CONTAINER IS INVALID")
            self.bus.emit(EventName.ERROR, "HALTING THE SERVICE DUE TO ERROR")
            self.bus.emit(EventName.ERROR, "Fix CONTAINER_PASSWORD and start the service again")
            logger.critical("Wallet container password rejected, halting")
            self._halting = True
            self._kill()
            self._halt(1)
        elif MARKER_LOADED in line:
            self.bus.emit(EventName.INFO, "walletd has loaded the wallet container...")
        elif MARKER_FINISHED in line:
            self.bus.emit(EventName.INFO, "Wallet loading has finished")
            self._spawn_background(self._announce_address())
            self.monitor.start_checks()

    async def _announce_address(self) -> None:
        try:
            addresses = await self.rpc.get_addresses()
        except Exception as e:
            self.bus.emit(EventName.WARNING, f"Error retrieving addresses from wallet: {e}")
            return
        if addresses:
            self.bus.emit(
                EventName.INFO,
                f"Started walletd with base public address: {addresses[0]}",
            )

    def _spawn_background(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ==================== EXIT ====================

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        exit_code = await process.wait()
        self._on_exit(process, exit_code)

    def _on_exit(self, process, exit_code: Optional[int]) -> None:
        if process is not self._process:
            return
        logger.warning("walletd exited", pid=process.pid, exit_code=exit_code)
        # Output written just before exit is still buffered in the terminal.
        self._detach_output(drain=True)
        self._process = None
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None
        self.monitor.mark_exited()
        if self._halting:
            return
        # Trailing console output can still be in flight; let it land first.
        self._close_timer = DelayedCall(
            self.config.CLOSE_EVENT_DELAY_SECONDS,
            lambda: self.bus.emit(EventName.CLOSE, exit_code),
        )
