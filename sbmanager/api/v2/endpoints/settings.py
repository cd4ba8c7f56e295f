# sbmanager/api/v2/endpoints/settings.py

import logging
import secrets
from fastapi import APIRouter, Depends

from sbmanager.api.deps import applied, get_coordinator, get_health_checker, get_scheduler, get_store
from sbmanager.repos.store_repo import JSONStore
from sbmanager.schemas.entities import HostEntry, Settings
from sbmanager.services.apply_service import ApplyCoordinator
from sbmanager.services.health_service import HealthChecker
from sbmanager.services.subscription_service import SubscriptionScheduler
from sbmanager.utils.hosts import read_system_hosts

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/")
def get_settings(store: JSONStore = Depends(get_store)):
    return {"data": store.get_settings()}


@router.put("/")
async def update_settings(
    settings: Settings,
    store: JSONStore = Depends(get_store),
    coordinator: ApplyCoordinator = Depends(get_coordinator),
    scheduler: SubscriptionScheduler = Depends(get_scheduler),
    health: HealthChecker = Depends(get_health_checker),
):
    # The Clash API only needs a secret when it is reachable from the LAN
    if settings.allow_lan:
        if not settings.clash_api_secret:
            settings.clash_api_secret = secrets.token_hex(16)
    else:
        settings.clash_api_secret = ""

    store.update_settings(settings)
    await scheduler.restart()
    health.reconfigure(settings)
    return applied(coordinator, settings)


@router.get("/system-hosts")
def get_system_hosts():
    entries = [
        HostEntry(id=f"system-{domain}", domain=domain, ips=ips)
        for domain, ips in read_system_hosts().items()
    ]
    return {"data": entries}
