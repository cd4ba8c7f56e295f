import logging
import os
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List
from xml.sax.saxutils import escape

from sbmanager.core.errors import DaemonError

logger = logging.getLogger(__name__)

SERVICE_NAME = "singbox-manager"
LAUNCHD_LABEL = "com.singbox.manager"
COMMAND_TIMEOUT = 30


@dataclass
class ServiceConfig:
    """What the installed service runs."""
    program_arguments: List[str]
    working_dir: str
    log_dir: str
    environment: Dict[str, str] = field(default_factory=dict)
    keep_alive: bool = True


def _run(args: List[str], check: bool = True) -> subprocess.CompletedProcess:
    try:
        result = subprocess.run(args, capture_output=True, text=True, timeout=COMMAND_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise DaemonError(f"'{' '.join(args)}' failed: {e}") from e
    if check and result.returncode != 0:
        raise DaemonError(f"'{' '.join(args)}' failed: {(result.stderr or result.stdout).strip()}")
    return result


class ServiceManager(ABC):
    """Installs the manager itself as a per-user background service."""

    supported = True

    @property
    @abstractmethod
    def service_path(self) -> str:
        ...

    @abstractmethod
    def render(self, config: ServiceConfig) -> str:
        ...

    @abstractmethod
    def install(self, config: ServiceConfig) -> None:
        ...

    @abstractmethod
    def uninstall(self) -> None:
        ...

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def restart(self) -> None:
        ...

    @abstractmethod
    def is_running(self) -> bool:
        ...

    def is_installed(self) -> bool:
        return os.path.exists(self.service_path)

    def status(self) -> Dict[str, object]:
        installed = self.is_installed()
        return {
            "supported": self.supported,
            "installed": installed,
            "running": installed and self.is_running(),
            "service_path": self.service_path,
        }

    def _write_service_file(self, content: str) -> None:
        os.makedirs(os.path.dirname(self.service_path), exist_ok=True)
        with open(self.service_path, "w", encoding="utf-8") as file:
            file.write(content)
        logger.info(f"Wrote service definition to {self.service_path}")


class SystemdManager(ServiceManager):
    def __init__(self, home_dir: str):
        self._path = os.path.join(home_dir, ".config", "systemd", "user", f"{SERVICE_NAME}.service")

    @property
    def service_path(self) -> str:
        return self._path

    def render(self, config: ServiceConfig) -> str:
        lines = [
            "[Unit]",
            "Description=sing-box manager",
            "After=network-online.target",
            "",
            "[Service]",
            "Type=simple",
            f"WorkingDirectory={config.working_dir}",
            f"ExecStart={' '.join(config.program_arguments)}",
        ]
        for key, value in sorted(config.environment.items()):
            lines.append(f"Environment={key}={value}")
        lines += [
            f"Restart={'always' if config.keep_alive else 'no'}",
            "RestartSec=5",
            f"StandardOutput=append:{os.path.join(config.log_dir, 'sbm.log')}",
            f"StandardError=append:{os.path.join(config.log_dir, 'sbm.error.log')}",
            "",
            "[Install]",
            "WantedBy=default.target",
            "",
        ]
        return "\n".join(lines)

    def install(self, config: ServiceConfig) -> None:
        os.makedirs(config.log_dir, exist_ok=True)
        self._write_service_file(self.render(config))
        _run(["systemctl", "--user", "daemon-reload"])
        _run(["systemctl", "--user", "enable", SERVICE_NAME])

    def uninstall(self) -> None:
        _run(["systemctl", "--user", "disable", "--now", SERVICE_NAME], check=False)
        if os.path.exists(self.service_path):
            os.remove(self.service_path)
        _run(["systemctl", "--user", "daemon-reload"], check=False)

    def start(self) -> None:
        _run(["systemctl", "--user", "start", SERVICE_NAME])

    def stop(self) -> None:
        _run(["systemctl", "--user", "stop", SERVICE_NAME])

    def restart(self) -> None:
        _run(["systemctl", "--user", "restart", SERVICE_NAME])

    def is_running(self) -> bool:
        return _run(["systemctl", "--user", "is-active", "--quiet", SERVICE_NAME], check=False).returncode == 0


class LaunchdManager(ServiceManager):
    def __init__(self, home_dir: str, label: str = LAUNCHD_LABEL):
        self.label = label
        self._path = os.path.join(home_dir, "Library", "LaunchAgents", f"{label}.plist")
        self.home_dir = home_dir

    @property
    def service_path(self) -> str:
        return self._path

    def render(self, config: ServiceConfig) -> str:
        arguments = "\n".join(f"        <string>{escape(arg)}</string>" for arg in config.program_arguments)
        environment = dict(config.environment)
        environment.setdefault("HOME", self.home_dir)
        env_entries = "\n".join(
            f"        <key>{escape(key)}</key>\n        <string>{escape(value)}</string>"
            for key, value in sorted(environment.items())
        )
        keep_alive = "true" if config.keep_alive else "false"
        return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{escape(self.label)}</string>
    <key>ProgramArguments</key>
    <array>
{arguments}
    </array>
    <key>EnvironmentVariables</key>
    <dict>
{env_entries}
    </dict>
    <key>RunAtLoad</key>
    <true/>
    <key>KeepAlive</key>
    <{keep_alive}/>
    <key>StandardOutPath</key>
    <string>{escape(os.path.join(config.log_dir, 'sbm.log'))}</string>
    <key>StandardErrorPath</key>
    <string>{escape(os.path.join(config.log_dir, 'sbm.error.log'))}</string>
    <key>WorkingDirectory</key>
    <string>{escape(config.working_dir)}</string>
</dict>
</plist>
"""

    def install(self, config: ServiceConfig) -> None:
        os.makedirs(config.log_dir, exist_ok=True)
        self._write_service_file(self.render(config))
        _run(["launchctl", "load", self.service_path])

    def uninstall(self) -> None:
        _run(["launchctl", "unload", self.service_path], check=False)
        if os.path.exists(self.service_path):
            os.remove(self.service_path)

    def start(self) -> None:
        _run(["launchctl", "start", self.label])

    def stop(self) -> None:
        _run(["launchctl", "stop", self.label])

    def restart(self) -> None:
        _run(["launchctl", "stop", self.label], check=False)
        _run(["launchctl", "start", self.label])

    def is_running(self) -> bool:
        return _run(["launchctl", "list", self.label], check=False).returncode == 0


class UnsupportedServiceManager(ServiceManager):
    supported = False

    @property
    def service_path(self) -> str:
        return ""

    def _unsupported(self) -> DaemonError:
        return DaemonError(f"Background service installation is not supported on {sys.platform}")

    def render(self, config: ServiceConfig) -> str:
        raise self._unsupported()

    def install(self, config: ServiceConfig) -> None:
        raise self._unsupported()

    def uninstall(self) -> None:
        raise self._unsupported()

    def start(self) -> None:
        raise self._unsupported()

    def stop(self) -> None:
        raise self._unsupported()

    def restart(self) -> None:
        raise self._unsupported()

    def is_installed(self) -> bool:
        return False

    def is_running(self) -> bool:
        return False


def get_service_manager(platform: str = sys.platform, home_dir: str = "") -> ServiceManager:
    home_dir = home_dir or os.path.expanduser("~")
    if platform.startswith("linux"):
        return SystemdManager(home_dir)
    if platform == "darwin":
        return LaunchdManager(home_dir)
    return UnsupportedServiceManager()


def default_service_config(data_dir: str, host: str, port: int) -> ServiceConfig:
    """Runs this application under uvicorn with the given data directory."""
    project_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    return ServiceConfig(
        program_arguments=[sys.executable, "-m", "uvicorn", "--factory", "main:create_app",
                           "--host", host, "--port", str(port)],
        working_dir=project_dir,
        log_dir=os.path.join(data_dir, "logs"),
        environment={"DATA_DIR": data_dir, "WEB_HOST": host, "WEB_PORT": str(port)},
    )
