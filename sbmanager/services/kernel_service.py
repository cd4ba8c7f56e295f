import asyncio
import logging
import os
import platform
import posixpath
import re
import shutil
import subprocess
import sys
import tarfile
import tempfile
import zipfile
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import httpx

from sbmanager.core.errors import KernelError
from sbmanager.repos.config_repo import ConfigRepo
from sbmanager.repos.store_repo import JSONStore
from sbmanager.schemas.kernel import DownloadProgress, DownloadStatus, KernelInfo, Release

logger = logging.getLogger(__name__)

GITHUB_RELEASES_URL = "https://api.github.com/repos/SagerNet/sing-box/releases"
STABLE_TAG_RE = re.compile(r"^v\d+\.\d+\.\d+$")
USER_AGENT = "singbox-manager"
FETCH_TIMEOUT = 30.0
DOWNLOAD_TIMEOUT = 600.0
VERSION_TIMEOUT = 10
# Share of the progress bar spent on the download itself
DOWNLOAD_SHARE = 80.0

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv7l": "armv7",
    "armv7": "armv7",
}


def current_os() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform in ("win32", "cygwin"):
        return "windows"
    return sys.platform


def current_arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def asset_name(version: str, os_name: str, arch: str) -> str:
    """Release asset for a platform, e.g. sing-box-1.11.0-linux-amd64.tar.gz."""
    extension = "zip" if os_name == "windows" else "tar.gz"
    return f"sing-box-{version.lstrip('v')}-{os_name}-{arch}.{extension}"


def parse_version(output: str) -> str:
    """'sing-box version 1.11.0' -> '1.11.0'. Falls back to the whole first line."""
    lines = output.strip().splitlines()
    if not lines:
        return ""
    parts = lines[0].split()
    for i, part in enumerate(parts[:-1]):
        if part == "version":
            return parts[i + 1]
    return lines[0]


def extract_binary(archive: str, dest_dir: str, os_name: str) -> str:
    """
    Pulls the sing-box executable out of a release archive.
    Returns:
        str: Path of the extracted file inside dest_dir.
    Raises:
        KernelError: The archive holds no sing-box executable.
    """
    executable = "sing-box.exe" if os_name == "windows" else "sing-box"
    target = os.path.join(dest_dir, executable)

    if archive.endswith(".zip"):
        with zipfile.ZipFile(archive) as bundle:
            for info in bundle.infolist():
                if not info.is_dir() and posixpath.basename(info.filename) == executable:
                    with bundle.open(info) as src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)
                    return target
    else:
        with tarfile.open(archive, "r:gz") as bundle:
            for member in bundle.getmembers():
                if member.isfile() and posixpath.basename(member.name) == executable:
                    src = bundle.extractfile(member)
                    with src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)
                    return target

    raise KernelError(f"No {executable} executable in {os.path.basename(archive)}")


def install_binary(source: str, dest: str) -> str:
    """Atomically replaces dest with an executable copy of source."""
    directory = os.path.dirname(dest)
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix=".sing-box-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
            shutil.copyfileobj(src, out)
        os.chmod(tmp_path, 0o755)
        os.replace(tmp_path, dest)
    except OSError:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise

    logger.info(f"Installed sing-box to {dest}")
    return dest


class KernelService:
    """Reports the installed sing-box binary and installs releases from GitHub."""

    def __init__(self,
                 store: JSONStore,
                 config_repo: ConfigRepo,
                 client: Optional[httpx.AsyncClient] = None,
                 os_name: Optional[str] = None,
                 arch: Optional[str] = None):
        self.store = store
        self.config_repo = config_repo
        self.client = client
        self.os_name = os_name or current_os()
        self.arch = arch or current_arch()
        self._progress = DownloadProgress()
        self._task: Optional[asyncio.Task] = None

    def binary_path(self) -> str:
        singbox_path, _ = self.config_repo.engine_paths(self.store.get_settings())
        return singbox_path

    def info(self) -> KernelInfo:
        path = self.binary_path()
        info = KernelInfo(path=path, os=self.os_name, arch=self.arch)
        if not os.path.isfile(path):
            return info

        info.installed = True
        try:
            result = subprocess.run([path, "version"], capture_output=True, text=True, timeout=VERSION_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Could not read sing-box version from {path}: {e}")
            return info
        if result.returncode == 0:
            info.version = parse_version(result.stdout)
        return info

    @property
    def progress(self) -> DownloadProgress:
        return self._progress.model_copy()

    def is_downloading(self) -> bool:
        return self._task is not None and not self._task.done()

    def _update(self, status: DownloadStatus, progress: float, message: str,
                downloaded: int = 0, total: int = 0) -> None:
        self._progress = DownloadProgress(status=status, progress=round(progress, 1), message=message,
                                          downloaded=downloaded, total=total)

    def _proxied(self, url: str) -> str:
        github_proxy = self.store.get_settings().github_proxy
        return f"{github_proxy}{url}" if github_proxy else url

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
        else:
            async with httpx.AsyncClient() as client:
                yield client

    async def fetch_releases(self) -> List[Release]:
        """Stable releases, newest first, as GitHub lists them."""
        headers = {"Accept": "application/vnd.github+json", "User-Agent": USER_AGENT}
        try:
            async with self._client() as client:
                response = await client.get(self._proxied(GITHUB_RELEASES_URL), headers=headers,
                                            timeout=FETCH_TIMEOUT, follow_redirects=True)
        except httpx.RequestError as e:
            logger.error(f"Network error fetching sing-box releases: {e}")
            raise KernelError(f"Network error fetching sing-box releases: {e}") from e

        if response.status_code == 403:
            raise KernelError("GitHub API rate limit exceeded. Try again later or set a GitHub proxy.",
                              status_code=429)
        if response.status_code != 200:
            raise KernelError(f"GitHub API returned {response.status_code}")

        try:
            releases = [Release.model_validate(item) for item in response.json()]
        except (TypeError, ValueError) as e:
            raise KernelError(f"Unexpected GitHub API response: {e}") from e
        return [r for r in releases if not r.prerelease and STABLE_TAG_RE.match(r.tag_name)]

    async def latest_version(self) -> str:
        releases = await self.fetch_releases()
        if not releases:
            raise KernelError("No stable sing-box release found", status_code=404)
        return releases[0].tag_name

    def start_download(self, version: Optional[str] = None) -> None:
        """Runs download() as a task on the running loop. Poll `progress` for its state."""
        if self.is_downloading():
            raise KernelError("A sing-box download is already in progress", status_code=409)
        self._update(DownloadStatus.PREPARING, 0, "Preparing download")
        self._task = asyncio.get_running_loop().create_task(self._download_in_background(version))

    async def _download_in_background(self, version: Optional[str]) -> None:
        try:
            await self.download(version)
        except (KernelError, OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            logger.error(f"sing-box download failed: {e}")

    async def close(self) -> None:
        if self.is_downloading():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def download(self, version: Optional[str] = None) -> str:
        """
        Downloads a release (latest stable when version is None) and installs it
        over the configured binary path.
        Returns:
            str: The installed path.
        Raises:
            KernelError, OSError: The progress state is left at "error" with the message.
        """
        try:
            return await self._download(version)
        except (KernelError, OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            self._update(DownloadStatus.ERROR, self._progress.progress, str(e))
            raise

    async def _download(self, version: Optional[str]) -> str:
        # 1. Resolve the release and the asset for this platform
        self._update(DownloadStatus.PREPARING, 0, "Fetching release list")
        releases = await self.fetch_releases()
        if version:
            tag = version if version.startswith("v") else f"v{version}"
            release = next((r for r in releases if r.tag_name == tag), None)
            if release is None:
                raise KernelError(f"sing-box release {tag} not found", status_code=404)
        elif releases:
            release = releases[0]
        else:
            raise KernelError("No stable sing-box release found", status_code=404)

        name = asset_name(release.tag_name, self.os_name, self.arch)
        asset = next((a for a in release.assets if a.name == name), None)
        if asset is None:
            raise KernelError(f"Release {release.tag_name} has no asset {name}", status_code=404)

        with tempfile.TemporaryDirectory(prefix="sing-box-download-") as work_dir:
            # 2. Download
            archive = os.path.join(work_dir, name)
            await self._fetch_archive(self._proxied(asset.browser_download_url), archive, asset.size)

            # 3. Extract
            self._update(DownloadStatus.EXTRACTING, DOWNLOAD_SHARE, "Extracting")
            extracted = extract_binary(archive, work_dir, self.os_name)

            # 4. Install over the configured binary
            self._update(DownloadStatus.INSTALLING, 90, "Installing")
            path = install_binary(extracted, self.binary_path())

        self._update(DownloadStatus.COMPLETED, 100, f"sing-box {release.tag_name} installed")
        return path

    async def _fetch_archive(self, url: str, path: str, expected_size: int) -> None:
        logger.info(f"Downloading {url}")
        self._update(DownloadStatus.DOWNLOADING, 0, "Downloading", total=expected_size)
        try:
            async with self._client() as client:
                async with client.stream("GET", url, headers={"User-Agent": USER_AGENT},
                                         timeout=DOWNLOAD_TIMEOUT, follow_redirects=True) as response:
                    if response.status_code != 200:
                        raise KernelError(f"Download failed with HTTP {response.status_code}")

                    total = int(response.headers.get("content-length") or 0) or expected_size
                    downloaded = 0
                    with open(path, "wb") as file:
                        async for chunk in response.aiter_bytes():
                            file.write(chunk)
                            downloaded += len(chunk)
                            share = min(DOWNLOAD_SHARE * downloaded / total, DOWNLOAD_SHARE) if total else 0
                            self._update(DownloadStatus.DOWNLOADING, share, "Downloading",
                                         downloaded=downloaded, total=total)
        except httpx.RequestError as e:
            raise KernelError(f"Network error downloading sing-box: {e}") from e
