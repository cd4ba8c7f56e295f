# sbmanager/api/v2/api.py

from fastapi import APIRouter, Depends
from sbmanager.api.deps import verify_api_key
from sbmanager.api.v2.endpoints import config, daemon, filters, kernel, nodes, rules, service, settings, subscriptions

router = APIRouter(dependencies=[Depends(verify_api_key)])

router.include_router(service.router, prefix="/service", tags=["service"])
router.include_router(config.router, prefix="/config", tags=["config"])
router.include_router(settings.router, prefix="/settings", tags=["settings"])
router.include_router(nodes.router, prefix="/nodes", tags=["nodes"])
router.include_router(filters.router, prefix="/filters", tags=["filters"])
router.include_router(rules.router, prefix="/rules", tags=["rules"])
router.include_router(rules.group_router, prefix="/rule-groups", tags=["rule-groups"])
router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
router.include_router(daemon.router, prefix="/daemon", tags=["daemon"])
router.include_router(kernel.router, prefix="/kernel", tags=["kernel"])
