from enum import Enum
from typing import List, Optional
from pydantic import BaseModel


class KernelInfo(BaseModel):
    installed: bool = False
    version: str = ""
    path: str
    os: str
    arch: str


class DownloadStatus(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    INSTALLING = "installing"
    COMPLETED = "completed"
    ERROR = "error"


class DownloadProgress(BaseModel):
    status: DownloadStatus = DownloadStatus.IDLE
    progress: float = 0
    message: str = ""
    downloaded: int = 0
    total: int = 0


class ReleaseAsset(BaseModel):
    name: str
    browser_download_url: str
    size: int = 0


class Release(BaseModel):
    """Subset of a GitHub release object; unknown fields are ignored."""
    tag_name: str
    name: str = ""
    prerelease: bool = False
    published_at: Optional[str] = None
    assets: List[ReleaseAsset] = []
