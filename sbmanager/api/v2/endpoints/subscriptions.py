# sbmanager/api/v2/endpoints/subscriptions.py

import logging
from fastapi import APIRouter, Depends

from sbmanager.api.deps import applied, get_coordinator, get_store, get_subscription_service
from sbmanager.repos.store_repo import JSONStore
from sbmanager.schemas.requests import SubscriptionCreate, SubscriptionUpdate
from sbmanager.services.apply_service import ApplyCoordinator
from sbmanager.services.subscription_service import SubscriptionService

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/")
def get_subscriptions(store: JSONStore = Depends(get_store)):
    return {"data": store.get_subscriptions()}


@router.post("/")
async def add_subscription(payload: SubscriptionCreate,
                           service: SubscriptionService = Depends(get_subscription_service),
                           coordinator: ApplyCoordinator = Depends(get_coordinator)):
    subscription = await service.add(payload.name, payload.url)
    return applied(coordinator, subscription, f"Subscription added with {subscription.node_count} nodes")


@router.put("/{subscription_id}")
def update_subscription(subscription_id: str,
                        payload: SubscriptionUpdate,
                        store: JSONStore = Depends(get_store),
                        coordinator: ApplyCoordinator = Depends(get_coordinator)):
    subscription = store.get_subscription(subscription_id)
    for field, value in payload.model_dump(exclude_none=True).items():
        setattr(subscription, field, value)
    store.update_subscription(subscription)
    return applied(coordinator, subscription, "Subscription updated")


@router.delete("/{subscription_id}")
def delete_subscription(subscription_id: str,
                        store: JSONStore = Depends(get_store),
                        coordinator: ApplyCoordinator = Depends(get_coordinator)):
    store.delete_subscription(subscription_id)
    return applied(coordinator, message="Subscription deleted")


@router.post("/{subscription_id}/refresh")
async def refresh_subscription(subscription_id: str,
                               service: SubscriptionService = Depends(get_subscription_service),
                               coordinator: ApplyCoordinator = Depends(get_coordinator)):
    subscription = await service.refresh(subscription_id)
    return applied(coordinator, subscription, f"Subscription refreshed with {subscription.node_count} nodes")


@router.post("/refresh")
async def refresh_all(service: SubscriptionService = Depends(get_subscription_service),
                      coordinator: ApplyCoordinator = Depends(get_coordinator)):
    results = await service.refresh_all()
    failed = {sid: error for sid, error in results.items() if error}
    return applied(coordinator, {"refreshed": len(results) - len(failed), "failed": failed},
                   "Subscriptions refreshed")
