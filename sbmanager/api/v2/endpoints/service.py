# sbmanager/api/v2/endpoints/service.py

import logging
from fastapi import APIRouter, Depends

from sbmanager.api.deps import get_health_checker, get_supervisor
from sbmanager.core.errors import ManagerError
from sbmanager.services.health_service import HealthChecker
from sbmanager.services.supervisor import ProcessSupervisor

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/status")
def get_status(supervisor: ProcessSupervisor = Depends(get_supervisor)):
    running = supervisor.is_running()
    try:
        version = supervisor.version()
    except ManagerError as e:
        logger.debug(f"sing-box version unavailable: {e}")
        version = ""

    return {
        "data": {
            "running": running,
            "pid": supervisor.get_pid() if running else 0,
            "state": supervisor.state.value,
            "recovered": supervisor.recovered,
            "version": version,
        }
    }


@router.post("/start")
def start(supervisor: ProcessSupervisor = Depends(get_supervisor)):
    supervisor.start()
    return {"message": "sing-box started", "data": {"pid": supervisor.get_pid()}}


@router.post("/stop")
def stop(supervisor: ProcessSupervisor = Depends(get_supervisor)):
    supervisor.stop()
    return {"message": "sing-box stopped"}


@router.post("/restart")
def restart(supervisor: ProcessSupervisor = Depends(get_supervisor)):
    supervisor.restart()
    return {"message": "sing-box restarted", "data": {"pid": supervisor.get_pid()}}


@router.post("/reload")
def reload(supervisor: ProcessSupervisor = Depends(get_supervisor)):
    supervisor.reload()
    return {"message": "Reload signal sent"}


@router.post("/check")
def check(supervisor: ProcessSupervisor = Depends(get_supervisor)):
    output = supervisor.check()
    return {"message": "Configuration is valid", "data": {"output": output}}


@router.get("/logs")
def get_logs(supervisor: ProcessSupervisor = Depends(get_supervisor)):
    return {"data": supervisor.get_logs()}


@router.delete("/logs")
def clear_logs(supervisor: ProcessSupervisor = Depends(get_supervisor)):
    supervisor.clear_logs()
    return {"message": "Logs cleared"}


@router.get("/health")
def get_health(health: HealthChecker = Depends(get_health_checker)):
    return {"data": health.status()}
