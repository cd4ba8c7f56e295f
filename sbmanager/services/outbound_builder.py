from dataclasses import dataclass, field
from typing import Any, Dict, List, Set
import logging

from sbmanager.schemas.entities import (
    DEFAULT_URLTEST_INTERVAL,
    DEFAULT_URLTEST_TOLERANCE,
    DEFAULT_URLTEST_URL,
    Filter,
    Node,
    RuleGroup,
    Settings,
)
from sbmanager.utils.country import OTHER, country_label

logger = logging.getLogger(__name__)

DIRECT = "DIRECT"
REJECT = "REJECT"
AUTO = "Auto"
PROXY = "Proxy"
FINAL = "Final"
RESERVED_TAGS = frozenset((DIRECT, REJECT, AUTO, PROXY, FINAL))


@dataclass
class OutboundGraph:
    outbounds: List[Dict[str, Any]] = field(default_factory=list)
    node_tags: List[str] = field(default_factory=list)
    country_group_tags: List[str] = field(default_factory=list)
    filter_group_tags: List[str] = field(default_factory=list)
    rule_group_tags: List[str] = field(default_factory=list)
    # Enabled rule groups that got a selector; only these are routed to
    rule_groups: List[RuleGroup] = field(default_factory=list)
    tags: Set[str] = field(default_factory=set)

    def add(self, outbound: Dict[str, Any]) -> None:
        self.outbounds.append(outbound)
        self.tags.add(outbound["tag"])

    def is_taken(self, tag: str, kind: str) -> bool:
        """A group tag must not repeat an emitted tag or one of the built-in group names."""
        if tag in self.tags or tag in RESERVED_TAGS:
            logger.warning(f"{kind} '{tag}' collides with another outbound tag. Skipping.")
            return True
        return False


def node_to_outbound(node: Node) -> Dict[str, Any]:
    outbound: Dict[str, Any] = {
        "tag": node.tag,
        "type": node.type,
        "server": node.server,
        "server_port": node.server_port,
    }
    outbound.update(node.extra)
    return outbound


def match_filter(node: Node, node_filter: Filter) -> bool:
    """
    Evaluates a filter predicate against a node.
    Precedence: include countries, exclude countries, include keywords, exclude keywords.
    """
    name = node.tag.lower()
    country = node.country.upper() or OTHER

    if node_filter.include_countries:
        if country not in {c.upper() for c in node_filter.include_countries}:
            return False

    if country in {c.upper() for c in node_filter.exclude_countries}:
        return False

    if node_filter.include:
        if not any(keyword.lower() in name for keyword in node_filter.include):
            return False

    if any(keyword.lower() in name for keyword in node_filter.exclude):
        return False

    return True


def _urltest_group(tag: str, members: List[str], url: str = DEFAULT_URLTEST_URL,
                   interval: str = DEFAULT_URLTEST_INTERVAL,
                   tolerance: int = DEFAULT_URLTEST_TOLERANCE) -> Dict[str, Any]:
    return {
        "tag": tag,
        "type": "urltest",
        "outbounds": members,
        "url": url,
        "interval": interval,
        "tolerance": tolerance,
    }


def _selector(tag: str, members: List[str], default: str) -> Dict[str, Any]:
    if default not in members:
        fallback = PROXY if PROXY in members else members[0]
        logger.warning(f"Selector '{tag}' default '{default}' is not one of its members. Using '{fallback}'.")
        default = fallback
    return {
        "tag": tag,
        "type": "selector",
        "outbounds": members,
        "default": default,
    }


def _filter_group(node_filter: Filter, members: List[str]) -> Dict[str, Any]:
    if node_filter.mode == "urltest":
        tuning = node_filter.urltest_config
        if tuning is None:
            return _urltest_group(node_filter.name, members)
        return _urltest_group(node_filter.name, members, tuning.url, tuning.interval, tuning.tolerance)
    return {
        "tag": node_filter.name,
        "type": "selector",
        "outbounds": members,
    }


def build_outbounds(nodes: List[Node],
                    filters: List[Filter],
                    rule_groups: List[RuleGroup],
                    settings: Settings) -> OutboundGraph:
    """
    Builds the layered outbound list: sentinels, nodes, country groups,
    filter groups, Auto, Proxy, rule group selectors and Final.
    Every selector only lists tags emitted earlier in the same call.
    Parameters:
        nodes (List[Node]): Enabled nodes in store order.
        filters (List[Filter]): All filters; disabled ones are skipped.
        rule_groups (List[RuleGroup]): All rule groups; disabled ones are skipped.
        settings (Settings): Global settings (final outbound).
    Returns:
        OutboundGraph: Outbounds in emission order plus the tag lists per layer.
    """
    graph = OutboundGraph()

    # 1. Sentinels
    graph.add({"type": "direct", "tag": DIRECT})
    graph.add({"type": "block", "tag": REJECT})

    # 2. Nodes
    seen_tags: Set[str] = set()
    country_nodes: Dict[str, List[str]] = {}
    emitted: List[Node] = []
    for node in nodes:
        if node.tag in RESERVED_TAGS:
            logger.warning(f"Node tag '{node.tag}' is a reserved outbound name. Skipping node.")
            continue
        graph.add(node_to_outbound(node))
        emitted.append(node)
        if node.tag in seen_tags:
            continue
        seen_tags.add(node.tag)
        graph.node_tags.append(node.tag)
        country_nodes.setdefault(node.country.upper() or OTHER, []).append(node.tag)

    # 3. Country groups, sorted by code so output never depends on node order
    for code in sorted(country_nodes):
        group_tag = country_label(code)
        if graph.is_taken(group_tag, "Country group"):
            continue
        graph.country_group_tags.append(group_tag)
        graph.add(_urltest_group(group_tag, country_nodes[code]))

    # 4. Filter groups
    for node_filter in filters:
        if not node_filter.enabled:
            continue

        if graph.is_taken(node_filter.name, "Filter group"):
            continue

        matched: List[str] = []
        for node in emitted:
            if node.tag not in matched and match_filter(node, node_filter):
                matched.append(node.tag)

        if not matched:
            logger.info(f"Filter '{node_filter.name}' matched no nodes. Skipping group.")
            continue

        graph.filter_group_tags.append(node_filter.name)
        graph.add(_filter_group(node_filter, matched))

    # 5. Auto
    if graph.node_tags:
        graph.add(_urltest_group(AUTO, list(graph.node_tags)))

    auto = [AUTO] if graph.node_tags else []
    groups = graph.country_group_tags + graph.filter_group_tags

    # 6. Proxy
    proxy_members = auto + groups + graph.node_tags
    if proxy_members:
        graph.add(_selector(PROXY, proxy_members, AUTO if auto else proxy_members[0]))
    else:
        graph.add(_selector(PROXY, [DIRECT], DIRECT))

    # 7. Rule group selectors
    for rule_group in rule_groups:
        if not rule_group.enabled:
            continue
        if graph.is_taken(rule_group.name, "Rule group"):
            continue
        members = list(dict.fromkeys([PROXY] + auto + [DIRECT, REJECT] + groups + graph.node_tags))
        graph.rule_group_tags.append(rule_group.name)
        graph.rule_groups.append(rule_group)
        graph.add(_selector(rule_group.name, members, rule_group.outbound))

    # 8. Final
    final_members = list(dict.fromkeys([PROXY, DIRECT] + groups))
    graph.add(_selector(FINAL, final_members, settings.final_outbound))

    return graph
