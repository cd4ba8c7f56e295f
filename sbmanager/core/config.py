# sbmanager/core/config.py

import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class ManagerConfig(BaseSettings):
    DATA_DIR: str = os.path.join(os.path.expanduser("~"), ".singbox-manager")
    WEB_HOST: str = "0.0.0.0"
    WEB_PORT: int = 9090
    API_KEY: str = ""
    USE_API_KEY: bool = False
    LOG_LEVEL: str = "INFO"
    MONITOR_INTERVAL: float = 2.0
    MONITOR_FAILURE_THRESHOLD: int = 3
    HEALTH_CHECK_MAX_FAILURES: int = 3
    MAX_LOG_LINES: int = 1000
    READ_SYSTEM_HOSTS: bool = True
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def data_dir(self) -> str:
        return os.path.abspath(os.path.expanduser(self.DATA_DIR))

    @property
    def log_dir(self) -> str:
        return os.path.join(self.data_dir, "logs")
