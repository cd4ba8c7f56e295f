from typing import Any, Dict, Iterable, List, Optional, Set
import logging

from sbmanager.schemas.entities import Rule, RuleGroup, Settings
from sbmanager.services.outbound_builder import DIRECT, FINAL

logger = logging.getLogger(__name__)

SNIFF_RULE = {
    "action": "sniff",
    "sniffer": ["dns", "http", "tls", "quic"],
    "timeout": "500ms",
}
HIJACK_DNS_RULE = {
    "protocol": "dns",
    "action": "hijack-dns",
}

DIRECT_MATCH_KINDS = ("domain_suffix", "domain_keyword", "domain", "ip_cidr")


class RuleSetRegistry:
    """Collects remote rule-set descriptors; the first reference to a tag wins."""

    def __init__(self, settings: Settings):
        self.base_url = settings.ruleset_base_url.rstrip("/")
        self.github_proxy = settings.github_proxy
        self._descriptors: Dict[str, Dict[str, Any]] = {}

    def _url(self, tag: str) -> str:
        if tag.startswith("geoip-"):
            url = f"{self.base_url}/../rule-set-geoip/{tag}.srs"
        else:
            url = f"{self.base_url}/{tag}.srs"
        return f"{self.github_proxy}{url}" if self.github_proxy else url

    def reference(self, kind: str, value: str) -> str:
        tag = f"{kind}-{value}"
        self.add(tag)
        return tag

    def add(self, tag: str) -> None:
        if tag in self._descriptors:
            return
        self._descriptors[tag] = {
            "tag": tag,
            "type": "remote",
            "format": "binary",
            "url": self._url(tag),
            "download_detour": DIRECT,
        }

    def descriptors(self) -> List[Dict[str, Any]]:
        return list(self._descriptors.values())


def sort_rules(rules: List[Rule]) -> List[Rule]:
    # sorted() is stable: equal priorities keep declaration order
    return sorted((r for r in rules if r.enabled), key=lambda r: r.priority)


def _parse_ports(values: List[str]) -> List[int]:
    ports = []
    for value in values:
        try:
            port = int(str(value).strip())
        except ValueError:
            logger.warning(f"Ignoring invalid port value '{value}'")
            continue
        if 0 <= port <= 65535:
            ports.append(port)
        else:
            logger.warning(f"Ignoring out of range port {port}")
    return ports


def _match_clause(rule: Rule, registry: RuleSetRegistry) -> Optional[Dict[str, Any]]:
    values = [v for v in rule.values if str(v).strip()]
    if not values:
        return None

    if rule.rule_type in DIRECT_MATCH_KINDS:
        return {rule.rule_type: values}

    if rule.rule_type == "port":
        ports = _parse_ports(values)
        if not ports:
            return None
        return {"port": ports[0] if len(ports) == 1 else ports}

    if rule.rule_type in ("geosite", "geoip"):
        return {"rule_set": [registry.reference(rule.rule_type, v) for v in values]}

    return None


def build_route(rules: List[Rule],
                rule_groups: List[RuleGroup],
                settings: Settings,
                valid_outbounds: Set[str],
                hosts: Optional[Dict[str, List[str]]] = None,
                extra_rule_sets: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Builds the route section: fixed sniff/DNS prefix, hosts overrides,
    custom rules by priority, rule group rules, and the rule-set descriptors
    they reference.
    Parameters:
        rules (List[Rule]): Custom rules in declaration order.
        rule_groups (List[RuleGroup]): Rule groups in declaration order.
        settings (Settings): Global settings (rule-set source).
        valid_outbounds (Set[str]): Every outbound tag emitted for this document.
        hosts (Optional[Dict[str, List[str]]]): Domain -> IPs overrides routed DIRECT.
        extra_rule_sets (Iterable[str]): Rule-set tags needed elsewhere (DNS rules).
    Returns:
        Dict[str, Any]: The route section.
    """
    registry = RuleSetRegistry(settings)
    enabled_groups = [g for g in rule_groups if g.enabled]

    # Rule groups register their rule sets before custom rules
    for rule_group in enabled_groups:
        for site in rule_group.site_rules:
            registry.reference("geosite", site)
        for ip in rule_group.ip_rules:
            registry.reference("geoip", ip)

    route_rules: List[Dict[str, Any]] = [dict(SNIFF_RULE), dict(HIJACK_DNS_RULE)]

    for domain, ips in (hosts or {}).items():
        if ips:
            route_rules.append({
                "domain": [domain],
                "outbound": DIRECT,
                "override_address": ips[0],
            })

    for rule in sort_rules(rules):
        if rule.outbound not in valid_outbounds:
            logger.warning(f"Rule '{rule.name or rule.id}' targets unknown outbound '{rule.outbound}'. Skipping.")
            continue

        clause = _match_clause(rule, registry)
        if clause is None:
            logger.warning(f"Rule '{rule.name or rule.id}' has no usable {rule.rule_type} values. Skipping.")
            continue

        route_rule = dict(clause)
        route_rule["outbound"] = rule.outbound
        route_rules.append(route_rule)

    for rule_group in enabled_groups:
        if rule_group.site_rules:
            route_rules.append({
                "rule_set": [f"geosite-{s}" for s in rule_group.site_rules],
                "outbound": rule_group.name,
            })
        if rule_group.ip_rules:
            route_rules.append({
                "rule_set": [f"geoip-{i}" for i in rule_group.ip_rules],
                "outbound": rule_group.name,
            })

    for tag in extra_rule_sets:
        registry.add(tag)

    return {
        "rules": route_rules,
        "rule_set": registry.descriptors(),
        "final": FINAL,
        "auto_detect_interface": True,
        "default_domain_resolver": {"server": "dns_direct", "rewrite_ttl": 60},
    }
