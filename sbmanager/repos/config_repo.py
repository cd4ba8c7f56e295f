import os
import tempfile
import logging
from typing import Optional, Tuple
from sbmanager.schemas.entities import Settings

logger = logging.getLogger(__name__)

STAGED_PREFIX = ".staged-"


class ConfigRepo:
    """Generated sing-box config on disk. Relative paths resolve against the data directory."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        os.makedirs(self.data_dir, exist_ok=True)

    def resolve(self, path: str) -> str:
        path = os.path.expanduser(path)
        if os.path.isabs(path):
            return path
        return os.path.abspath(os.path.join(self.data_dir, path))

    def engine_paths(self, settings: Settings) -> Tuple[str, str]:
        """Returns (binary, config) as absolute paths."""
        return self.resolve(settings.singbox_path), self.resolve(settings.config_path)

    def write_config(self, config_path: str, content: str) -> str:
        '''
        Atomically replace the generated config.
        Args:
            config_path (str): Target path, absolute or relative to the data directory.
            content (str): Serialized configuration.
        Returns:
            str: The absolute path written.
        Raises:
            IOError: If the file cannot be written.
        '''
        path = self.resolve(config_path)
        self._write_atomic(path, content)
        logger.info(f"Wrote sing-box config to {path}")
        return path

    def staged_path(self, config_path: str) -> str:
        path = self.resolve(config_path)
        return os.path.join(os.path.dirname(path), STAGED_PREFIX + os.path.basename(path))

    def stage_config(self, config_path: str, content: str) -> str:
        """
        Writes content next to the live config without replacing it.
        Returns:
            str: The staged file, to be checked and then passed to promote() or discard().
        """
        staged = self.staged_path(config_path)
        self._write_atomic(staged, content)
        return staged

    def promote(self, staged: str, config_path: str) -> str:
        """Moves a staged config over the live one."""
        path = self.resolve(config_path)
        try:
            os.replace(staged, path)
        except OSError as e:
            raise IOError(f"Error replacing config '{path}': {e}") from e
        logger.info(f"Wrote sing-box config to {path}")
        return path

    def discard(self, staged: str) -> None:
        try:
            os.remove(staged)
        except FileNotFoundError:
            pass

    def read_config(self, config_path: str) -> Optional[str]:
        path = self.resolve(config_path)
        if not os.path.exists(path):
            logger.warning(f"Generated config not found: {path}")
            return None

        with open(path, 'r', encoding='utf-8') as file:
            return file.read()

    def _write_atomic(self, path: str, content: str) -> None:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".config-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as file:
                file.write(content)
                file.flush()
                os.fsync(file.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise IOError(f"Error writing config '{path}': {e}") from e
