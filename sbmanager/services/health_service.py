from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging
import threading

import httpx

from sbmanager.core.errors import ManagerError
from sbmanager.schemas.entities import Settings
from sbmanager.services.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

CHECK_TIMEOUT = 5.0
MIN_INTERVAL = 5
DEFAULT_MAX_FAILURES = 3


class HealthChecker:
    """
    Polls the Clash API `/version` endpoint while the engine runs.

    The supervisor's monitor only notices a process that exited. This catches
    an engine that is alive but no longer answering: after max_failures
    consecutive failed checks it restarts the engine, if auto_restart is on.
    """

    def __init__(self,
                 supervisor: ProcessSupervisor,
                 *,
                 max_failures: int = DEFAULT_MAX_FAILURES,
                 transport: Optional[httpx.BaseTransport] = None):
        self.supervisor = supervisor
        self.max_failures = max_failures
        self.transport = transport

        self.enabled = False
        self.interval: float = 30
        self.auto_restart = True
        self.port = 0
        self.secret = ""

        self._lock = threading.Lock()
        self._fail_count = 0
        self._last_check: Optional[datetime] = None
        self._last_result: Optional[bool] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def configure(self, settings: Settings) -> None:
        with self._lock:
            self.enabled = settings.health_check_enabled
            self.interval = max(settings.health_check_interval, MIN_INTERVAL)
            self.auto_restart = settings.health_check_auto_restart
            self.port = settings.clash_api_port
            # The generated config only carries a controller secret when LAN access is on
            self.secret = settings.clash_api_secret if settings.allow_lan else ""
            self._fail_count = 0

    def start(self) -> None:
        with self._lock:
            if not self.enabled or self._thread is not None:
                return
            self._stop = threading.Event()
            self._thread = threading.Thread(target=self._loop, args=(self._stop,),
                                            name="engine-health", daemon=True)
            self._thread.start()
        logger.info(f"Health checker started, interval {self.interval}s")

    def stop(self) -> None:
        """Signals the loop to exit. A check already in flight still completes."""
        with self._lock:
            if self._thread is None:
                return
            self._stop.set()
            self._thread = None
        logger.info("Health checker stopped")

    def reconfigure(self, settings: Settings) -> None:
        self.stop()
        self.configure(settings)
        self.start()

    def _loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval):
            self.check()

    def check(self) -> Optional[bool]:
        """
        Runs one health check.
        Returns:
            Optional[bool]: None when the engine is not running, otherwise whether it answered.
        """
        if not self.supervisor.is_running():
            return None

        healthy = self.clash_api_healthy()
        with self._lock:
            self._last_check = datetime.now(timezone.utc)
            self._last_result = healthy
            if healthy:
                self._fail_count = 0
                return True
            self._fail_count += 1
            fail_count = self._fail_count
            restart = self.auto_restart and fail_count >= self.max_failures

        logger.warning(f"sing-box health check failed ({fail_count}/{self.max_failures})")
        if not restart:
            return False

        logger.warning("sing-box is not responding. Restarting.")
        try:
            self.supervisor.restart()
        except ManagerError as e:
            logger.error(f"Restart after failed health checks did not succeed: {e}")
        else:
            with self._lock:
                self._fail_count = 0
        return False

    def clash_api_healthy(self) -> bool:
        with self._lock:
            port, secret = self.port, self.secret
        # Without a controller there is nothing to ask
        if port <= 0:
            return True

        headers = {"Authorization": f"Bearer {secret}"} if secret else {}
        try:
            with httpx.Client(transport=self.transport, timeout=CHECK_TIMEOUT, trust_env=False) as client:
                response = client.get(f"http://127.0.0.1:{port}/version", headers=headers)
        except httpx.HTTPError as e:
            logger.debug(f"Clash API unreachable: {e}")
            return False
        return response.status_code == 200

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "enabled": self.enabled,
                "running": self._thread is not None,
                "interval": self.interval,
                "auto_restart": self.auto_restart,
                "fail_count": self._fail_count,
                "max_failures": self.max_failures,
                "last_check_time": self._last_check,
                "last_check_result": self._last_result,
            }
