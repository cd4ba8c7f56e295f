import asyncio
import io
import json
import os
import tarfile
import zipfile

import httpx
import pytest

from helpers import posix_only
from sbmanager.core.errors import KernelError
from sbmanager.repos.config_repo import ConfigRepo
from sbmanager.schemas.kernel import DownloadStatus
from sbmanager.services import kernel_service
from sbmanager.services.kernel_service import (
    GITHUB_RELEASES_URL,
    KernelService,
    asset_name,
    extract_binary,
    parse_version,
)

ENGINE_SCRIPT = b"#!/bin/sh\necho 'sing-box version 1.11.0'\n"
DOWNLOAD_BASE = "https://github.com/SagerNet/sing-box/releases/download"


def _tarball(members):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as bundle:
        for name, body in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(body)
            info.mode = 0o644
            bundle.addfile(info, io.BytesIO(body))
    return buffer.getvalue()


def _zipball(members):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        for name, body in members.items():
            bundle.writestr(name, body)
    return buffer.getvalue()


def _release(tag, assets=(), prerelease=False):
    return {
        "tag_name": tag,
        "name": tag,
        "prerelease": prerelease,
        "published_at": "2025-01-01T00:00:00Z",
        "html_url": f"https://github.com/SagerNet/sing-box/releases/tag/{tag}",
        "assets": [
            {"name": name, "browser_download_url": f"{DOWNLOAD_BASE}/{tag}/{name}", "size": size}
            for name, size in assets
        ],
    }


LINUX_TARBALL = _tarball({
    "sing-box-1.11.0-linux-amd64/LICENSE": b"GPL",
    "sing-box-1.11.0-linux-amd64/sing-box": ENGINE_SCRIPT,
})
RELEASES = [
    _release("v1.12.0-beta.1", [("sing-box-1.12.0-beta.1-linux-amd64.tar.gz", 1)], prerelease=True),
    _release("v1.11.0", [("sing-box-1.11.0-linux-amd64.tar.gz", len(LINUX_TARBALL))]),
    _release("v1.10.7", [("sing-box-1.10.7-linux-amd64.tar.gz", 1)]),
    _release("nightly"),
]


class GitHub:
    """Serves a release list and asset downloads, recording each requested URL."""

    def __init__(self, releases=None, assets=None, releases_status=200):
        self.releases = RELEASES if releases is None else releases
        self.assets = assets if assets is not None else {
            f"{DOWNLOAD_BASE}/v1.11.0/sing-box-1.11.0-linux-amd64.tar.gz": LINUX_TARBALL,
        }
        self.releases_status = releases_status
        self.urls = []

    def __call__(self, request):
        url = str(request.url)
        self.urls.append(url)
        if url.endswith(GITHUB_RELEASES_URL):
            if self.releases_status != 200:
                return httpx.Response(self.releases_status, json={"message": "API rate limit exceeded"})
            return httpx.Response(200, content=json.dumps(self.releases).encode())
        for asset_url, body in self.assets.items():
            if url.endswith(asset_url):
                return httpx.Response(200, content=body)
        return httpx.Response(404)


def _service(store, data_dir, github, os_name="linux", arch="amd64"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(github))
    return KernelService(store, ConfigRepo(data_dir), client=client, os_name=os_name, arch=arch)


def test_parse_version():
    assert parse_version("sing-box version 1.11.0\n\nEnvironment: go1.23.4 linux/amd64\n") == "1.11.0"
    assert parse_version("custom build\n") == "custom build"
    assert parse_version("") == ""


def test_asset_name_per_platform():
    assert asset_name("v1.11.0", "linux", "amd64") == "sing-box-1.11.0-linux-amd64.tar.gz"
    assert asset_name("1.11.0", "darwin", "arm64") == "sing-box-1.11.0-darwin-arm64.tar.gz"
    assert asset_name("v1.11.0", "windows", "amd64") == "sing-box-1.11.0-windows-amd64.zip"


@pytest.mark.parametrize("machine, expected", [("x86_64", "amd64"), ("AMD64", "amd64"), ("aarch64", "arm64"),
                                               ("armv7l", "armv7"), ("riscv64", "riscv64")])
def test_current_arch_normalizes_machine_names(monkeypatch, machine, expected):
    monkeypatch.setattr(kernel_service.platform, "machine", lambda: machine)
    assert kernel_service.current_arch() == expected


def test_fetch_releases_keeps_stable_tags_only(store, data_dir):
    service = _service(store, data_dir, GitHub())
    releases = asyncio.run(service.fetch_releases())

    assert [r.tag_name for r in releases] == ["v1.11.0", "v1.10.7"]
    assert asyncio.run(service.latest_version()) == "v1.11.0"


def test_fetch_releases_uses_github_proxy(store, data_dir):
    settings = store.get_settings()
    settings.github_proxy = "https://ghproxy.example/"
    store.update_settings(settings)
    github = GitHub()

    asyncio.run(_service(store, data_dir, github).fetch_releases())

    assert github.urls == [f"https://ghproxy.example/{GITHUB_RELEASES_URL}"]


def test_rate_limit_is_reported(store, data_dir):
    service = _service(store, data_dir, GitHub(releases_status=403))
    with pytest.raises(KernelError) as excinfo:
        asyncio.run(service.fetch_releases())
    assert excinfo.value.status_code == 429


def test_download_installs_latest_release(store, data_dir):
    service = _service(store, data_dir, GitHub())

    path = asyncio.run(service.download())

    assert path == os.path.join(data_dir, "bin", "sing-box")
    with open(path, "rb") as file:
        assert file.read() == ENGINE_SCRIPT
    assert os.access(path, os.X_OK)
    assert sorted(os.listdir(os.path.dirname(path))) == ["sing-box"]

    progress = service.progress
    assert progress.status == DownloadStatus.COMPLETED
    assert progress.progress == 100
    assert progress.downloaded == len(LINUX_TARBALL)
    assert "v1.11.0" in progress.message


def test_download_replaces_existing_binary(store, data_dir, fake_engine):
    binary, _ = fake_engine
    asyncio.run(_service(store, data_dir, GitHub()).download("1.11.0"))
    with open(binary, "rb") as file:
        assert file.read() == ENGINE_SCRIPT


def test_download_from_zip_on_windows(store, data_dir):
    zipball = _zipball({"sing-box-1.11.0-windows-amd64/sing-box.exe": b"MZ"})
    github = GitHub(
        releases=[_release("v1.11.0", [("sing-box-1.11.0-windows-amd64.zip", len(zipball))])],
        assets={f"{DOWNLOAD_BASE}/v1.11.0/sing-box-1.11.0-windows-amd64.zip": zipball},
    )

    path = asyncio.run(_service(store, data_dir, github, os_name="windows").download())

    with open(path, "rb") as file:
        assert file.read() == b"MZ"


def test_unknown_version_and_missing_asset_leave_error_state(store, data_dir):
    service = _service(store, data_dir, GitHub())
    with pytest.raises(KernelError) as excinfo:
        asyncio.run(service.download("v9.9.9"))
    assert excinfo.value.status_code == 404
    assert service.progress.status == DownloadStatus.ERROR

    service = _service(store, data_dir, GitHub(), arch="riscv64")
    with pytest.raises(KernelError):
        asyncio.run(service.download())
    assert service.progress.status == DownloadStatus.ERROR
    assert "sing-box-1.11.0-linux-riscv64.tar.gz" in service.progress.message
    assert not os.path.exists(os.path.join(data_dir, "bin", "sing-box"))


def test_failed_download_keeps_existing_binary(store, data_dir, fake_engine):
    binary, _ = fake_engine
    with open(binary, "rb") as file:
        before = file.read()

    service = _service(store, data_dir, GitHub(assets={}))
    with pytest.raises(KernelError):
        asyncio.run(service.download())

    with open(binary, "rb") as file:
        assert file.read() == before
    assert service.progress.status == DownloadStatus.ERROR


def test_archive_without_binary_is_rejected(tmp_path):
    archive = tmp_path / "sing-box-1.11.0-linux-amd64.tar.gz"
    archive.write_bytes(_tarball({"sing-box-1.11.0-linux-amd64/README.md": b"hi"}))
    with pytest.raises(KernelError):
        extract_binary(str(archive), str(tmp_path), "linux")


def test_background_download_rejects_a_second_start(store, data_dir):
    service = _service(store, data_dir, GitHub())

    async def scenario():
        service.start_download()
        assert service.progress.status == DownloadStatus.PREPARING
        with pytest.raises(KernelError) as excinfo:
            service.start_download()
        assert excinfo.value.status_code == 409
        while service.is_downloading():
            await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert service.progress.status == DownloadStatus.COMPLETED


def test_info_without_binary(store, data_dir):
    info = _service(store, data_dir, GitHub()).info()
    assert not info.installed
    assert info.version == ""
    assert info.path == os.path.join(data_dir, "bin", "sing-box")
    assert (info.os, info.arch) == ("linux", "amd64")


@posix_only
def test_info_reports_installed_version(store, data_dir, fake_engine):
    info = _service(store, data_dir, GitHub()).info()
    assert info.installed
    assert info.version == "1.11.0-fake"
