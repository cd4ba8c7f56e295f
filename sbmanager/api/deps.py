# sbmanager/api/deps.py

import logging
from typing import Any, Dict, Optional
from fastapi import HTTPException, Query, Request

from sbmanager.core.config import ManagerConfig
from sbmanager.repos.store_repo import JSONStore
from sbmanager.services.apply_service import ApplyCoordinator
from sbmanager.services.daemon_service import ServiceManager
from sbmanager.services.health_service import HealthChecker
from sbmanager.services.kernel_service import KernelService
from sbmanager.services.subscription_service import SubscriptionScheduler, SubscriptionService
from sbmanager.services.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def get_config(request: Request) -> ManagerConfig:
    return request.app.state.config


def get_store(request: Request) -> JSONStore:
    return request.app.state.store


def get_supervisor(request: Request) -> ProcessSupervisor:
    return request.app.state.supervisor


def get_coordinator(request: Request) -> ApplyCoordinator:
    return request.app.state.coordinator


def get_subscription_service(request: Request) -> SubscriptionService:
    return request.app.state.subscriptions


def get_scheduler(request: Request) -> SubscriptionScheduler:
    return request.app.state.scheduler


def get_service_manager(request: Request) -> ServiceManager:
    return request.app.state.service_manager


def get_health_checker(request: Request) -> HealthChecker:
    return request.app.state.health


def get_kernel_service(request: Request) -> KernelService:
    return request.app.state.kernel


def verify_api_key(request: Request, api_key: Optional[str] = Query(None)) -> None:
    config: ManagerConfig = request.app.state.config
    if not config.USE_API_KEY:
        return
    if api_key != config.API_KEY:
        logger.warning(f"Unauthorized access attempt from {request.client.host if request.client else 'unknown'}")
        raise HTTPException(status_code=401, detail="Unauthorized access")


def applied(coordinator: ApplyCoordinator, data: Any = None, message: str = "Updated") -> Dict[str, Any]:
    """Requests a background apply and reports the previous apply failure, if any."""
    body: Dict[str, Any] = {"data": data, "message": message}
    error = coordinator.request_apply()
    if error is not None:
        body["warning"] = f"{message}, but the last automatic apply failed: {error}"
    return body
