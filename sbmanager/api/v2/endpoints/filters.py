# sbmanager/api/v2/endpoints/filters.py

from fastapi import APIRouter, Depends

from sbmanager.api.deps import applied, get_coordinator, get_store
from sbmanager.repos.store_repo import JSONStore
from sbmanager.schemas.entities import Filter
from sbmanager.services.apply_service import ApplyCoordinator

router = APIRouter()


@router.get("/")
def get_filters(store: JSONStore = Depends(get_store)):
    return {"data": store.get_filters()}


@router.post("/")
def add_filter(node_filter: Filter,
               store: JSONStore = Depends(get_store),
               coordinator: ApplyCoordinator = Depends(get_coordinator)):
    store.add_filter(node_filter)
    return applied(coordinator, node_filter, "Filter added")


@router.put("/{filter_id}")
def update_filter(filter_id: str,
                  node_filter: Filter,
                  store: JSONStore = Depends(get_store),
                  coordinator: ApplyCoordinator = Depends(get_coordinator)):
    node_filter.id = filter_id
    store.update_filter(node_filter)
    return applied(coordinator, node_filter, "Filter updated")


@router.delete("/{filter_id}")
def delete_filter(filter_id: str,
                  store: JSONStore = Depends(get_store),
                  coordinator: ApplyCoordinator = Depends(get_coordinator)):
    store.delete_filter(filter_id)
    return applied(coordinator, message="Filter deleted")
