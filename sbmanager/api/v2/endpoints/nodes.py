# sbmanager/api/v2/endpoints/nodes.py

from fastapi import APIRouter, Depends

from sbmanager.api.deps import applied, get_coordinator, get_store
from sbmanager.repos.store_repo import JSONStore
from sbmanager.schemas.entities import ManualNode
from sbmanager.services.apply_service import ApplyCoordinator
from sbmanager.utils.country import country_emoji, detect_country

router = APIRouter()


def _with_country(manual_node: ManualNode) -> ManualNode:
    node = manual_node.node
    if not node.country:
        node.country = detect_country(node.tag) or ""
    if node.country and not node.country_emoji:
        node.country_emoji = country_emoji(node.country)
    return manual_node


@router.get("/")
def get_all_nodes(store: JSONStore = Depends(get_store)):
    return {"data": store.get_all_nodes()}


@router.get("/countries")
def get_country_groups(store: JSONStore = Depends(get_store)):
    return {"data": store.get_country_groups()}


@router.get("/countries/{code}")
def get_nodes_by_country(code: str, store: JSONStore = Depends(get_store)):
    return {"data": store.get_nodes_by_country(code)}


@router.get("/manual")
def get_manual_nodes(store: JSONStore = Depends(get_store)):
    return {"data": store.get_manual_nodes()}


@router.post("/manual")
def add_manual_node(manual_node: ManualNode,
                    store: JSONStore = Depends(get_store),
                    coordinator: ApplyCoordinator = Depends(get_coordinator)):
    store.add_manual_node(_with_country(manual_node))
    return applied(coordinator, manual_node, "Node added")


@router.put("/manual/{node_id}")
def update_manual_node(node_id: str,
                       manual_node: ManualNode,
                       store: JSONStore = Depends(get_store),
                       coordinator: ApplyCoordinator = Depends(get_coordinator)):
    manual_node.id = node_id
    store.update_manual_node(_with_country(manual_node))
    return applied(coordinator, manual_node, "Node updated")


@router.delete("/manual/{node_id}")
def delete_manual_node(node_id: str,
                       store: JSONStore = Depends(get_store),
                       coordinator: ApplyCoordinator = Depends(get_coordinator)):
    store.delete_manual_node(node_id)
    return applied(coordinator, message="Node deleted")
