from pydantic import BaseModel
from typing import Optional


class SubscriptionCreate(BaseModel):
    name: str
    url: str


class SubscriptionUpdate(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    enabled: Optional[bool] = None


class DaemonInstall(BaseModel):
    start: bool = True


class KernelDownload(BaseModel):
    # None installs the latest stable release
    version: Optional[str] = None
