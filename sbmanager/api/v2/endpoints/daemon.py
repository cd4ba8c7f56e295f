# sbmanager/api/v2/endpoints/daemon.py

import logging
from fastapi import APIRouter, Depends

from sbmanager.api.deps import get_config, get_service_manager
from sbmanager.core.config import ManagerConfig
from sbmanager.core.errors import DaemonError
from sbmanager.schemas.requests import DaemonInstall
from sbmanager.services.daemon_service import ServiceManager, default_service_config

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/status")
def get_status(manager: ServiceManager = Depends(get_service_manager)):
    return {"data": manager.status()}


@router.post("/install")
def install(payload: DaemonInstall = DaemonInstall(),
            manager: ServiceManager = Depends(get_service_manager),
            config: ManagerConfig = Depends(get_config)):
    manager.install(default_service_config(config.data_dir, config.WEB_HOST, config.WEB_PORT))
    if not payload.start:
        return {"message": "Service installed", "data": manager.status()}

    try:
        manager.start()
    except DaemonError as e:
        logger.warning(f"Service installed but failed to start: {e}")
        return {"message": f"Service installed, but starting it failed: {e}", "data": manager.status()}
    return {"message": "Service installed and started", "data": manager.status()}


@router.post("/uninstall")
def uninstall(manager: ServiceManager = Depends(get_service_manager)):
    manager.uninstall()
    return {"message": "Service uninstalled"}


@router.post("/restart")
def restart(manager: ServiceManager = Depends(get_service_manager)):
    manager.restart()
    return {"message": "Service restarted"}
