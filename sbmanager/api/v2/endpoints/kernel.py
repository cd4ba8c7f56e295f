# sbmanager/api/v2/endpoints/kernel.py

import logging
from typing import Optional
from fastapi import APIRouter, Depends

from sbmanager.api.deps import get_kernel_service
from sbmanager.schemas.requests import KernelDownload
from sbmanager.services.kernel_service import KernelService

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/info")
def get_info(kernel: KernelService = Depends(get_kernel_service)):
    return {"data": kernel.info()}


@router.get("/releases")
async def get_releases(kernel: KernelService = Depends(get_kernel_service)):
    releases = await kernel.fetch_releases()
    return {"data": [
        {"tag_name": r.tag_name, "name": r.name, "published_at": r.published_at}
        for r in releases
    ]}


@router.post("/download")
async def start_download(body: Optional[KernelDownload] = None,
                         kernel: KernelService = Depends(get_kernel_service)):
    """Starts a background download. Poll /kernel/progress for its state."""
    version = body.version if body else None
    kernel.start_download(version)
    return {"message": "Download started", "data": kernel.progress}


@router.get("/progress")
def get_progress(kernel: KernelService = Depends(get_kernel_service)):
    return {"data": kernel.progress}
