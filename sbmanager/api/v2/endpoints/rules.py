# sbmanager/api/v2/endpoints/rules.py

from fastapi import APIRouter, Depends

from sbmanager.api.deps import applied, get_coordinator, get_store
from sbmanager.repos.store_repo import JSONStore
from sbmanager.schemas.entities import Rule, RuleGroup
from sbmanager.services.apply_service import ApplyCoordinator

router = APIRouter()
group_router = APIRouter()


@router.get("/")
def get_rules(store: JSONStore = Depends(get_store)):
    return {"data": store.get_rules()}


@router.post("/")
def add_rule(rule: Rule,
             store: JSONStore = Depends(get_store),
             coordinator: ApplyCoordinator = Depends(get_coordinator)):
    store.add_rule(rule)
    return applied(coordinator, rule, "Rule added")


@router.put("/{rule_id}")
def update_rule(rule_id: str,
                rule: Rule,
                store: JSONStore = Depends(get_store),
                coordinator: ApplyCoordinator = Depends(get_coordinator)):
    rule.id = rule_id
    store.update_rule(rule)
    return applied(coordinator, rule, "Rule updated")


@router.delete("/{rule_id}")
def delete_rule(rule_id: str,
                store: JSONStore = Depends(get_store),
                coordinator: ApplyCoordinator = Depends(get_coordinator)):
    store.delete_rule(rule_id)
    return applied(coordinator, message="Rule deleted")


# Rule groups are built in: they can be edited and toggled, not added or removed

@group_router.get("/")
def get_rule_groups(store: JSONStore = Depends(get_store)):
    return {"data": store.get_rule_groups()}


@group_router.put("/{group_id}")
def update_rule_group(group_id: str,
                      rule_group: RuleGroup,
                      store: JSONStore = Depends(get_store),
                      coordinator: ApplyCoordinator = Depends(get_coordinator)):
    rule_group.id = group_id
    store.update_rule_group(rule_group)
    return applied(coordinator, rule_group, "Rule group updated")
