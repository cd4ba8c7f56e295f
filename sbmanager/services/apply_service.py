from typing import Callable, Dict, List, Optional
import logging
import threading
from sbmanager.repos.config_repo import ConfigRepo
from sbmanager.repos.store_repo import JSONStore, StoreSnapshot
from sbmanager.services.apply_queue import CoalescingWorker
from sbmanager.services.singbox_config_service import SingBoxConfigService
from sbmanager.services.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

HostsLoader = Callable[[], Dict[str, List[str]]]


class ApplyCoordinator:
    """
    Single serialization point for "synthesize, persist, restart if running".

    request_apply() is cheap and never blocks on a pass; the background worker
    coalesces bursts. apply_now() runs a pass synchronously and raises.
    """

    def __init__(self,
                 store: JSONStore,
                 config_service: SingBoxConfigService,
                 config_repo: ConfigRepo,
                 supervisor: ProcessSupervisor,
                 hosts_loader: Optional[HostsLoader] = None):
        self.store = store
        self.config_service = config_service
        self.config_repo = config_repo
        self.supervisor = supervisor
        self.hosts_loader = hosts_loader
        self.worker = CoalescingWorker(self._background_pass, name="config-apply")
        self._pass_lock = threading.Lock()
        self._error_lock = threading.Lock()
        self._last_error: Optional[Exception] = None

    def start(self) -> None:
        self.worker.start()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self.worker.shutdown(timeout)

    @property
    def last_error(self) -> Optional[Exception]:
        with self._error_lock:
            return self._last_error

    def request_apply(self) -> Optional[Exception]:
        """
        Schedules a background pass when auto-apply is on.
        Returns:
            Optional[Exception]: The failure of the previous background pass, if any. It is cleared.
        """
        with self._error_lock:
            error = self._last_error
            self._last_error = None

        if not self.store.get_settings().auto_apply:
            return error

        self.worker.submit()
        return error

    def build_config(self, snapshot: Optional[StoreSnapshot] = None) -> str:
        """Renders the current store contents without touching disk."""
        if snapshot is None:
            snapshot = self.store.snapshot()
        return self.config_service.build_json(
            snapshot.settings,
            snapshot.nodes,
            snapshot.filters,
            snapshot.rules,
            snapshot.rule_groups,
            system_hosts=self.hosts_loader() if self.hosts_loader else None,
        )

    def current_config(self) -> Optional[str]:
        """The config last written to disk, or None before the first apply."""
        _, config_path = self.config_repo.engine_paths(self.store.get_settings())
        return self.config_repo.read_config(config_path)

    def apply_now(self) -> str:
        """
        Build, stage, `sing-box check` the staged file, promote it, then restart if running.
        A config that fails the check never replaces the live one.
        Returns:
            str: Path of the written config.
        Raises:
            BuildError, IOError, ConfigurationError, ProcessError
        """
        with self._pass_lock:
            snapshot = self.store.snapshot()
            content = self.build_config(snapshot)
            singbox_path, config_path = self.config_repo.engine_paths(snapshot.settings)
            self.supervisor.set_paths(singbox_path, config_path)

            staged = self.config_repo.stage_config(config_path, content)
            try:
                self.supervisor.check(staged)
            except Exception:
                self.config_repo.discard(staged)
                raise
            self.config_repo.promote(staged, config_path)

            if self.supervisor.is_running():
                self.supervisor.restart()
            logger.info("Configuration applied")
            return config_path

    def _write_config(self) -> str:
        snapshot = self.store.snapshot()
        content = self.build_config(snapshot)
        singbox_path, config_path = self.config_repo.engine_paths(snapshot.settings)
        self.config_repo.write_config(config_path, content)
        self.supervisor.set_paths(singbox_path, config_path)
        return config_path

    def _background_pass(self) -> None:
        with self._pass_lock:
            try:
                self._write_config()
                if self.supervisor.is_running():
                    self.supervisor.restart()
            except Exception as e:
                logger.error(f"Automatic config apply failed: {e}")
                with self._error_lock:
                    self._last_error = e
                return

            with self._error_lock:
                self._last_error = None
            logger.info("Configuration applied automatically")
