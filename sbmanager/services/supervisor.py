from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Set, Tuple, Union
import logging
import os
import signal
import subprocess
import sys
import threading

import psutil

from sbmanager.core.errors import AlreadyRunningError, ConfigurationError, ProcessError

logger = logging.getLogger(__name__)
# Engine stdout/stderr; persisted to logs/singbox.log by main.configure_logging
engine_logger = logging.getLogger("sbmanager.engine")

PID_FILE_NAME = "singbox.pid"
CHECK_TIMEOUT = 30


class EngineState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class Supervised:
    """A process spawned in this session: live handle plus its output readers."""
    process: subprocess.Popen
    readers: Tuple[threading.Thread, ...]

    @property
    def pid(self) -> int:
        return self.process.pid


@dataclass(frozen=True)
class RecoveredOnly:
    """A process found running at startup or by a later is_running() scan; only its pid is known."""
    pid: int


EngineHandle = Union[Supervised, RecoveredOnly]


def is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.Error:
        # Exists but belongs to someone we cannot inspect
        return psutil.pid_exists(pid)


def matches_engine_cmdline(cmdline: List[str], cwd: str, binary: str, config: str) -> bool:
    """
    Whether cmdline is exactly `<binary> run -c <config>`, paths resolved against cwd.
    A script binary shows up behind its interpreter, so one leading argument is allowed.
    """
    binary = os.path.realpath(binary)
    config = os.path.realpath(config)

    def resolve(arg: str) -> str:
        return os.path.realpath(os.path.join(cwd, arg))

    for offset in (0, 1):
        args = cmdline[offset:]
        if (len(args) == 4
                and resolve(args[0]) == binary
                and args[1] == "run"
                and args[2] in ("-c", "--config")
                and resolve(args[3]) == config):
            return True
    return False


class ProcessSupervisor:
    """
    Owns the lifecycle of one sing-box process.

    State lives behind a single lock. Start/Stop/Restart/Reload never wait on
    the background threads; the waiter and the liveness monitor only ever
    clear state for the handle they were started for.
    """

    def __init__(self,
                 singbox_path: str,
                 config_path: str,
                 data_dir: str,
                 *,
                 poll_interval: float = 2.0,
                 failure_threshold: int = 3,
                 max_log_lines: int = 1000,
                 recover: bool = True):
        self.singbox_path = singbox_path
        self.config_path = config_path
        self.data_dir = data_dir
        self.pid_file = os.path.join(data_dir, PID_FILE_NAME)
        self.poll_interval = poll_interval
        self.failure_threshold = max(1, failure_threshold)

        self.recovered = False
        self._state = EngineState.STOPPED
        self._handle: Optional[EngineHandle] = None
        self._pid = 0
        self._signalled: Set[int] = set()
        self._lock = threading.RLock()
        self._closing = threading.Event()

        self._logs: deque = deque(maxlen=max_log_lines)
        self._logs_lock = threading.Lock()

        if recover:
            self._recover()

    # ----- queries -----

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    def is_running(self) -> bool:
        """
        Cached RUNNING answers immediately. Otherwise checks the recorded pid,
        the handle pid, the marker file and the process table, in that order,
        and adopts the first live engine it finds.
        """
        with self._lock:
            if self._state == EngineState.RUNNING:
                return True

            self._signalled = {pid for pid in self._signalled if is_process_alive(pid)}

            handle = self._handle
            if self._pid and self._is_adoptable(self._pid):
                self._adopt(self._pid, handle if handle is not None and handle.pid == self._pid else None)
                return True

            if handle is not None and self._is_adoptable(handle.pid):
                self._adopt(handle.pid, handle)
                return True

            marker_pid = self._read_pid_file()
            if marker_pid and self._is_adoptable(marker_pid) and self._is_engine_process(marker_pid):
                self._adopt(marker_pid)
                return True

            found = self._find_engine_process()
            if found:
                self._adopt(found)
                return True

            return False

    def get_pid(self) -> int:
        with self._lock:
            if self._pid:
                return self._pid
            return self._handle.pid if self._handle is not None else 0

    def get_logs(self) -> List[str]:
        with self._logs_lock:
            return list(self._logs)

    def clear_logs(self) -> None:
        with self._logs_lock:
            self._logs.clear()

    def set_paths(self, singbox_path: str, config_path: str) -> None:
        with self._lock:
            self.singbox_path = singbox_path
            self.config_path = config_path

    # ----- lifecycle -----

    def start(self) -> None:
        """
        Spawns `sing-box run -c <config>` in the data directory.

        Raises:
            AlreadyRunningError: A process is already supervised.
            ConfigurationError: The binary or the config file is missing.
            ProcessError: The process could not be spawned.
        """
        with self._lock:
            if self._state == EngineState.RUNNING:
                raise AlreadyRunningError(f"sing-box is already running (PID {self.get_pid()})")

            if not os.path.isfile(self.singbox_path):
                raise ConfigurationError(f"sing-box binary not found: {self.singbox_path}")
            if not os.path.isfile(self.config_path):
                raise ConfigurationError(f"Config file not found: {self.config_path}")

            self._state = EngineState.STARTING
            popen_kwargs = {}
            if sys.platform != "win32":
                popen_kwargs["start_new_session"] = True

            try:
                os.makedirs(self.data_dir, exist_ok=True)
                process = subprocess.Popen(
                    [self.singbox_path, "run", "-c", self.config_path],
                    cwd=self.data_dir,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    **popen_kwargs,
                )
            except OSError as e:
                self._state = EngineState.STOPPED
                raise ProcessError(f"Failed to start sing-box: {e}") from e

            readers = tuple(
                threading.Thread(target=self._read_pipe, args=(pipe, name),
                                 name=f"singbox-{name}", daemon=True)
                for pipe, name in ((process.stdout, "stdout"), (process.stderr, "stderr"))
            )
            for reader in readers:
                reader.start()

            handle = Supervised(process=process, readers=readers)
            self._handle = handle
            self._pid = process.pid
            self._signalled.discard(process.pid)
            self.recovered = False
            self._state = EngineState.RUNNING
            self._write_pid_file(process.pid)

            threading.Thread(target=self._wait, args=(handle,),
                             name="singbox-waiter", daemon=True).start()
            self._start_monitor(handle)

        logger.info(f"sing-box started, PID: {process.pid}")

    def stop(self) -> None:
        """Sends SIGTERM and marks the engine stopped without waiting for exit."""
        with self._lock:
            handle = self._handle
            if handle is None:
                self._state = EngineState.STOPPED
                return

            self._state = EngineState.STOPPING
            pid = handle.pid
            try:
                self._terminate(handle)
            except ProcessError:
                self._state = EngineState.RUNNING
                raise

            self._signalled.add(pid)
            self._mark_stopped()

        logger.info(f"sing-box stopped, PID: {pid}")

    def restart(self) -> None:
        self.stop()
        self.start()

    def reload(self) -> None:
        """
        Sends SIGHUP so sing-box re-reads its config.

        Raises:
            ProcessError: No process started by this manager, or the signal failed.
        """
        with self._lock:
            handle = self._handle
            if not isinstance(handle, Supervised):
                raise ProcessError("Reload requires a sing-box process started by this manager; restart it first")

            sighup = getattr(signal, "SIGHUP", None)
            if sighup is None:
                raise ProcessError("Reload is not supported on this platform")

            try:
                handle.process.send_signal(sighup)
            except OSError as e:
                raise ProcessError(f"Failed to reload sing-box: {e}") from e

        logger.info(f"Sent reload signal to sing-box, PID: {handle.pid}")

    def close(self) -> None:
        """Stops background monitors. The engine itself keeps running."""
        self._closing.set()

    # ----- one-shot commands -----

    def check(self, config_path: Optional[str] = None) -> str:
        """
        Runs `sing-box check -c <config>` against config_path, or the supervised config.
        Raises:
            ConfigurationError: The binary is missing.
            ProcessError: The check failed; the message carries the engine output.
        """
        output = self._run_command(["check", "-c", config_path or self.config_path])
        logger.info("Configuration check passed")
        return output

    def version(self) -> str:
        return self._run_command(["version"]).strip()

    def _run_command(self, args: List[str]) -> str:
        with self._lock:
            binary = self.singbox_path
        if not os.path.isfile(binary):
            raise ConfigurationError(f"sing-box binary not found: {binary}")

        try:
            result = subprocess.run(
                [binary] + args,
                cwd=self.data_dir if os.path.isdir(self.data_dir) else None,
                capture_output=True,
                text=True,
                timeout=CHECK_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProcessError(f"sing-box {args[0]} failed: {e}") from e

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            raise ProcessError(f"sing-box {args[0]} failed: {output.strip()}")
        return output

    # ----- internals (callers hold self._lock unless noted) -----

    def _terminate(self, handle: EngineHandle) -> None:
        try:
            if isinstance(handle, Supervised):
                handle.process.terminate()
            else:
                psutil.Process(handle.pid).terminate()
            return
        except (ProcessLookupError, psutil.NoSuchProcess):
            return
        except (OSError, psutil.Error) as e:
            logger.warning(f"SIGTERM to PID {handle.pid} failed ({e}). Killing.")

        try:
            if isinstance(handle, Supervised):
                handle.process.kill()
            else:
                psutil.Process(handle.pid).kill()
        except (ProcessLookupError, psutil.NoSuchProcess):
            return
        except (OSError, psutil.Error) as e:
            raise ProcessError(f"Failed to stop sing-box (PID {handle.pid}): {e}") from e

    def _mark_stopped(self) -> None:
        self._handle = None
        self._pid = 0
        self.recovered = False
        self._state = EngineState.STOPPED
        self._remove_pid_file()

    def _adopt(self, pid: int, handle: Optional[EngineHandle] = None) -> None:
        if handle is None:
            handle = RecoveredOnly(pid=pid)
            self.recovered = True
        self._handle = handle
        self._pid = pid
        self._state = EngineState.RUNNING
        self._write_pid_file(pid)
        self._start_monitor(handle)
        logger.info(f"Detected running sing-box process, tracking PID: {pid}")

    def _is_adoptable(self, pid: int) -> bool:
        return pid not in self._signalled and is_process_alive(pid)

    def _recover(self) -> None:
        with self._lock:
            pid = self._read_pid_file()
            if pid and not (is_process_alive(pid) and self._is_engine_process(pid)):
                logger.info(f"Stale PID file for {pid}. Removing.")
                self._remove_pid_file()
                pid = 0

            if not pid:
                pid = self._find_engine_process()

            if pid:
                self._adopt(pid)

    def _is_engine_process(self, pid: int) -> bool:
        """True only when the process runs `<binary> run -c <config>` with our binary and config."""
        try:
            proc = psutil.Process(pid)
            cmdline = proc.cmdline()
            try:
                cwd = proc.cwd()
            except (psutil.AccessDenied, psutil.ZombieProcess):
                cwd = self.data_dir
        except psutil.Error:
            return False
        return matches_engine_cmdline(cmdline, cwd, self.singbox_path, self.config_path)

    def _find_engine_process(self) -> int:
        own_pid = os.getpid()
        for proc in psutil.process_iter(["pid"]):
            pid = proc.info["pid"]
            if pid == own_pid or pid in self._signalled:
                continue
            if is_process_alive(pid) and self._is_engine_process(pid):
                logger.info(f"Found sing-box in process table, PID: {pid}")
                return pid
        return 0

    def _read_pid_file(self) -> int:
        try:
            with open(self.pid_file, "r") as file:
                pid = int(file.read().strip())
        except (OSError, ValueError):
            return 0
        return pid if pid > 0 else 0

    def _write_pid_file(self, pid: int) -> None:
        try:
            with open(self.pid_file, "w") as file:
                file.write(str(pid))
        except OSError as e:
            logger.warning(f"Could not write PID file {self.pid_file}: {e}")

    def _remove_pid_file(self) -> None:
        try:
            os.remove(self.pid_file)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove PID file {self.pid_file}: {e}")

    # ----- background threads (do not hold self._lock on entry) -----

    def _add_log(self, line: str) -> None:
        with self._logs_lock:
            self._logs.append(line)
        engine_logger.info(line)

    def _read_pipe(self, pipe, stream: str) -> None:
        try:
            for line_bytes in iter(pipe.readline, b""):
                line = line_bytes.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._add_log(line)
        except (OSError, ValueError) as e:
            logger.debug(f"sing-box {stream} reader exited: {e}")
        finally:
            pipe.close()

    def _wait(self, handle: Supervised) -> None:
        returncode = handle.process.wait()
        with self._lock:
            if self._handle is not handle:
                return
            self._mark_stopped()
        logger.warning(f"sing-box exited on its own with code {returncode} (PID {handle.pid})")

    def _start_monitor(self, handle: EngineHandle) -> None:
        threading.Thread(target=self._monitor, args=(handle,),
                         name="singbox-monitor", daemon=True).start()

    def _monitor(self, handle: EngineHandle) -> None:
        failures = 0
        while not self._closing.wait(self.poll_interval):
            with self._lock:
                if self._handle is not handle:
                    return

            if is_process_alive(handle.pid):
                failures = 0
                continue

            failures += 1
            if failures < self.failure_threshold:
                logger.info(f"sing-box liveness check failed ({failures}/{self.failure_threshold}), PID: {handle.pid}")
                continue

            with self._lock:
                if self._handle is handle:
                    self._mark_stopped()
                    logger.warning(f"sing-box process exited, PID: {handle.pid}")
            return
