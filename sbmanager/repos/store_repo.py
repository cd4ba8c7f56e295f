import os
import tempfile
import threading
import logging
from dataclasses import dataclass
from typing import List, Optional, TypeVar
from pydantic import ValidationError
from sbmanager.core.errors import ConfigurationError, EntityNotFoundError
from sbmanager.schemas.entities import (
    AppData,
    CountryGroup,
    Filter,
    ManualNode,
    Node,
    Rule,
    RuleGroup,
    Settings,
    Subscription,
    default_rule_groups,
)
from sbmanager.utils.country import OTHER, country_emoji, country_name

logger = logging.getLogger(__name__)

DATA_FILE_NAME = "data.json"

T = TypeVar("T")


@dataclass
class StoreSnapshot:
    """Point-in-time copy of everything the config synthesizer reads."""
    settings: Settings
    nodes: List[Node]
    filters: List[Filter]
    rules: List[Rule]
    rule_groups: List[RuleGroup]


def _find_index(items: List[T], entity_id: str) -> int:
    for index, item in enumerate(items):
        if item.id == entity_id:
            return index
    return -1


class JSONStore:
    """
    Record store persisted as a single data.json in the data directory.

    Every accessor returns deep copies, and every mutation rewrites the file
    atomically while holding the store lock.
    """

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.path = os.path.join(data_dir, DATA_FILE_NAME)
        self._lock = threading.RLock()
        os.makedirs(self.data_dir, exist_ok=True)
        self._data = self._load()

    def _load(self) -> AppData:
        if not os.path.exists(self.path):
            logger.info(f"No data file at {self.path}. Initializing defaults.")
            data = AppData(rule_groups=default_rule_groups(), settings=Settings())
            self._write(data)
            return data

        try:
            with open(self.path, 'r', encoding='utf-8') as file:
                data = AppData.model_validate_json(file.read())
        except (OSError, ValidationError) as e:
            raise ConfigurationError(f"Failed to load data file {self.path}: {e}") from e

        changed = False
        if not data.rule_groups:
            data.rule_groups = default_rule_groups()
            changed = True

        # Older data files stored paths with a redundant data/ prefix
        if data.settings.singbox_path == "data/bin/sing-box":
            data.settings.singbox_path = "bin/sing-box"
            changed = True
        if data.settings.config_path == "data/generated/config.json":
            data.settings.config_path = "generated/config.json"
            changed = True

        if changed:
            self._write(data)
        return data

    def _write(self, data: AppData) -> None:
        fd, tmp_path = tempfile.mkstemp(prefix=".data-", suffix=".tmp", dir=self.data_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as file:
                file.write(data.model_dump_json(indent=2))
                file.flush()
                os.fsync(file.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise

    # ----- subscriptions -----

    def get_subscriptions(self) -> List[Subscription]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._data.subscriptions]

    def get_subscription(self, subscription_id: str) -> Subscription:
        with self._lock:
            index = _find_index(self._data.subscriptions, subscription_id)
            if index < 0:
                raise EntityNotFoundError("Subscription", subscription_id)
            return self._data.subscriptions[index].model_copy(deep=True)

    def add_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self._data.subscriptions.append(subscription.model_copy(deep=True))
            self._write(self._data)
            return subscription

    def update_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            index = _find_index(self._data.subscriptions, subscription.id)
            if index < 0:
                raise EntityNotFoundError("Subscription", subscription.id)
            self._data.subscriptions[index] = subscription.model_copy(deep=True)
            self._write(self._data)
            return subscription

    def delete_subscription(self, subscription_id: str) -> None:
        with self._lock:
            index = _find_index(self._data.subscriptions, subscription_id)
            if index < 0:
                raise EntityNotFoundError("Subscription", subscription_id)
            del self._data.subscriptions[index]
            self._write(self._data)

    # ----- manual nodes -----

    def get_manual_nodes(self) -> List[ManualNode]:
        with self._lock:
            return [n.model_copy(deep=True) for n in self._data.manual_nodes]

    def add_manual_node(self, manual_node: ManualNode) -> ManualNode:
        with self._lock:
            self._data.manual_nodes.append(manual_node.model_copy(deep=True))
            self._write(self._data)
            return manual_node

    def update_manual_node(self, manual_node: ManualNode) -> ManualNode:
        with self._lock:
            index = _find_index(self._data.manual_nodes, manual_node.id)
            if index < 0:
                raise EntityNotFoundError("Manual node", manual_node.id)
            self._data.manual_nodes[index] = manual_node.model_copy(deep=True)
            self._write(self._data)
            return manual_node

    def delete_manual_node(self, node_id: str) -> None:
        with self._lock:
            index = _find_index(self._data.manual_nodes, node_id)
            if index < 0:
                raise EntityNotFoundError("Manual node", node_id)
            del self._data.manual_nodes[index]
            self._write(self._data)

    # ----- filters -----

    def get_filters(self) -> List[Filter]:
        with self._lock:
            return [f.model_copy(deep=True) for f in self._data.filters]

    def get_filter(self, filter_id: str) -> Filter:
        with self._lock:
            index = _find_index(self._data.filters, filter_id)
            if index < 0:
                raise EntityNotFoundError("Filter", filter_id)
            return self._data.filters[index].model_copy(deep=True)

    def add_filter(self, node_filter: Filter) -> Filter:
        with self._lock:
            self._data.filters.append(node_filter.model_copy(deep=True))
            self._write(self._data)
            return node_filter

    def update_filter(self, node_filter: Filter) -> Filter:
        with self._lock:
            index = _find_index(self._data.filters, node_filter.id)
            if index < 0:
                raise EntityNotFoundError("Filter", node_filter.id)
            self._data.filters[index] = node_filter.model_copy(deep=True)
            self._write(self._data)
            return node_filter

    def delete_filter(self, filter_id: str) -> None:
        with self._lock:
            index = _find_index(self._data.filters, filter_id)
            if index < 0:
                raise EntityNotFoundError("Filter", filter_id)
            del self._data.filters[index]
            self._write(self._data)

    # ----- rules -----

    def get_rules(self) -> List[Rule]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._data.rules]

    def add_rule(self, rule: Rule) -> Rule:
        with self._lock:
            self._data.rules.append(rule.model_copy(deep=True))
            self._write(self._data)
            return rule

    def update_rule(self, rule: Rule) -> Rule:
        with self._lock:
            index = _find_index(self._data.rules, rule.id)
            if index < 0:
                raise EntityNotFoundError("Rule", rule.id)
            self._data.rules[index] = rule.model_copy(deep=True)
            self._write(self._data)
            return rule

    def delete_rule(self, rule_id: str) -> None:
        with self._lock:
            index = _find_index(self._data.rules, rule_id)
            if index < 0:
                raise EntityNotFoundError("Rule", rule_id)
            del self._data.rules[index]
            self._write(self._data)

    # ----- rule groups (built in; update only) -----

    def get_rule_groups(self) -> List[RuleGroup]:
        with self._lock:
            return [g.model_copy(deep=True) for g in self._data.rule_groups]

    def update_rule_group(self, rule_group: RuleGroup) -> RuleGroup:
        with self._lock:
            index = _find_index(self._data.rule_groups, rule_group.id)
            if index < 0:
                raise EntityNotFoundError("Rule group", rule_group.id)
            self._data.rule_groups[index] = rule_group.model_copy(deep=True)
            self._write(self._data)
            return rule_group

    # ----- settings -----

    def get_settings(self) -> Settings:
        with self._lock:
            return self._data.settings.model_copy(deep=True)

    def update_settings(self, settings: Settings) -> Settings:
        with self._lock:
            self._data.settings = settings.model_copy(deep=True)
            self._write(self._data)
            return settings

    # ----- derived views -----

    def _enabled_nodes(self) -> List[Node]:
        nodes: List[Node] = []
        for subscription in self._data.subscriptions:
            if subscription.enabled:
                nodes.extend(subscription.nodes)
        for manual_node in self._data.manual_nodes:
            if manual_node.enabled:
                nodes.append(manual_node.node)
        return nodes

    def get_all_nodes(self) -> List[Node]:
        """Enabled subscription nodes, then enabled manual nodes."""
        with self._lock:
            return [n.model_copy(deep=True) for n in self._enabled_nodes()]

    def get_nodes_by_country(self, code: str) -> List[Node]:
        code = code.upper()
        with self._lock:
            return [n.model_copy(deep=True) for n in self._enabled_nodes()
                    if (n.country.upper() or OTHER) == code]

    def get_country_groups(self) -> List[CountryGroup]:
        counts = {}
        with self._lock:
            for node in self._enabled_nodes():
                code = node.country.upper() or OTHER
                counts[code] = counts.get(code, 0) + 1

        return [
            CountryGroup(code=code, name=country_name(code), emoji=country_emoji(code), node_count=count)
            for code, count in sorted(counts.items())
        ]

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                settings=self._data.settings.model_copy(deep=True),
                nodes=[n.model_copy(deep=True) for n in self._enabled_nodes()],
                filters=[f.model_copy(deep=True) for f in self._data.filters],
                rules=[r.model_copy(deep=True) for r in self._data.rules],
                rule_groups=[g.model_copy(deep=True) for g in self._data.rule_groups],
            )

    def find_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            index = _find_index(self._data.subscriptions, subscription_id)
            return self._data.subscriptions[index].model_copy(deep=True) if index >= 0 else None
