from typing import List, Dict, Any, Optional
from urllib.parse import urlparse
import json
import logging
from pydantic import ValidationError
from sbmanager.core.errors import BuildError
from sbmanager.schemas.entities import Filter, Node, Rule, RuleGroup, Settings
from sbmanager.schemas.singbox_config import (
    CacheFileConfig,
    ClashAPIConfig,
    DNSConfig,
    DNSRule,
    DNSServer,
    ExperimentalConfig,
    Inbound,
    LogConfig,
    NTPConfig,
    SingBoxConfig,
)
from sbmanager.services.outbound_builder import PROXY, build_outbounds
from sbmanager.services.route_builder import build_route

logger = logging.getLogger(__name__)

NTP_SERVER = "time.apple.com"
FAKEIP_INET4_RANGE = "198.18.0.0/15"
FAKEIP_INET6_RANGE = "fc00::/18"
TUN_ADDRESSES = ["172.19.0.1/30", "fdfe:dcba:9876::1/126"]
CLASH_UI_DOWNLOAD_URL = "https://github.com/Zephyruso/zashboard/releases/latest/download/dist.zip"

ADS_RULE_SET = "geosite-category-ads-all"
CN_RULE_SET = "geosite-geolocation-cn"
DNS_RULE_SETS = (ADS_RULE_SET, CN_RULE_SET)


def parse_dns_server(tag: str, server: str, detour: Optional[str] = None) -> DNSServer:
    """
    Turns a DNS address string into a sing-box DNS server.

    "local"                        -> type local
    "https://dns.google/dns-query" -> type https, path /dns-query
    "tls://dns.google:853"         -> type tls, server_port 853
    "quic://dns.adguard.com"       -> type quic
    "h3://dns.google/dns-query"    -> type h3
    anything else                  -> plain UDP
    """
    server = server.strip()
    if server.lower() == "local":
        return DNSServer(tag=tag, type="local")

    scheme = server.split("://", 1)[0].lower() if "://" in server else "udp"

    if scheme in ("https", "h3"):
        parsed = urlparse(server)
        return DNSServer(
            tag=tag,
            type=scheme,
            server=parsed.hostname or parsed.netloc,
            server_port=parsed.port,
            path=parsed.path if parsed.path and parsed.path != "/" else None,
            detour=detour,
        )

    if scheme in ("tls", "quic"):
        rest = server.split("://", 1)[1]
        host, port = rest, None
        if ":" in rest:
            host, raw_port = rest.rsplit(":", 1)
            if raw_port.isdigit():
                port = int(raw_port)
            else:
                host = rest
        return DNSServer(tag=tag, type=scheme, server=host, server_port=port, detour=detour)

    if scheme != "udp":
        logger.warning(f"Unknown DNS scheme in '{server}'. Treating as plain UDP.")
        server = server.split("://", 1)[1]

    return DNSServer(tag=tag, type="udp", server=server, detour=detour)


def merge_hosts(settings: Settings, system_hosts: Optional[Dict[str, List[str]]] = None) -> Dict[str, List[str]]:
    """System entries first; user entries replace a system mapping for the same domain."""
    merged: Dict[str, List[str]] = {}
    for domain, ips in (system_hosts or {}).items():
        if ips:
            merged[domain] = list(ips)
    for host in settings.hosts:
        if host.enabled and host.domain and host.ips:
            merged[host.domain] = list(host.ips)
    return merged


class SingBoxConfigService:
    def build(self,
              settings: Settings,
              nodes: List[Node],
              filters: List[Filter],
              rules: List[Rule],
              rule_groups: List[RuleGroup],
              system_hosts: Optional[Dict[str, List[str]]] = None) -> Dict[str, Any]:
        """
        Generates the complete sing-box document. Pure: performs no I/O.
        Parameters:
            settings (Settings): Global settings.
            nodes (List[Node]): Enabled nodes in store order.
            filters (List[Filter]): Filters in declaration order.
            rules (List[Rule]): Custom rules in declaration order.
            rule_groups (List[RuleGroup]): Rule groups in declaration order.
            system_hosts (Optional[Dict[str, List[str]]]): Parsed hosts file, if any.
        Returns:
            Dict[str, Any]: The document, ready for serialization.
        """
        hosts = merge_hosts(settings, system_hosts)

        # 1. Outbounds
        graph = build_outbounds(nodes, filters, rule_groups, settings)

        # 2. Route
        route = build_route(rules, graph.rule_groups, settings, graph.tags,
                            hosts=hosts, extra_rule_sets=DNS_RULE_SETS)

        try:
            config = SingBoxConfig(
                log=LogConfig(level="info", timestamp=True),
                dns=self._build_dns(settings, hosts),
                ntp=NTPConfig(enabled=True, server=NTP_SERVER),
                inbounds=self._build_inbounds(settings),
                outbounds=graph.outbounds,
                route=route,
                experimental=self._build_experimental(settings),
            )
        except ValidationError as e:
            raise BuildError(f"Generated configuration is invalid: {e}") from e

        logger.debug(f"Built configuration with {len(graph.outbounds)} outbounds and "
                     f"{len(route['rules'])} route rules")
        return config.model_dump(exclude_none=True)

    def build_json(self, *args, **kwargs) -> str:
        """Same as build(), serialized as 2-space indented JSON."""
        config = self.build(*args, **kwargs)
        try:
            return json.dumps(config, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise BuildError(f"Failed to serialize configuration: {e}") from e

    def _build_dns(self, settings: Settings, hosts: Dict[str, List[str]]) -> DNSConfig:
        servers = [
            parse_dns_server("dns_proxy", settings.proxy_dns, detour=PROXY),
            parse_dns_server("dns_direct", settings.direct_dns),
            DNSServer(tag="dns_fakeip", type="fakeip",
                      inet4_range=FAKEIP_INET4_RANGE, inet6_range=FAKEIP_INET6_RANGE),
        ]
        rules = [
            DNSRule(rule_set=[ADS_RULE_SET], action="reject"),
            DNSRule(rule_set=[CN_RULE_SET], server="dns_direct", action="route"),
            DNSRule(query_type=["A", "AAAA"], server="dns_fakeip", action="route"),
        ]

        if hosts:
            predefined = {domain: ips[0] if len(ips) == 1 else ips for domain, ips in hosts.items()}
            servers.insert(0, DNSServer(tag="dns_hosts", type="hosts", predefined=predefined))
            rules.insert(0, DNSRule(domain=list(hosts), server="dns_hosts", action="route"))

        return DNSConfig(
            strategy="prefer_ipv4",
            servers=servers,
            rules=rules,
            final="dns_proxy",
            independent_cache=True,
        )

    def _build_inbounds(self, settings: Settings) -> List[Inbound]:
        listen = "0.0.0.0" if settings.allow_lan else "127.0.0.1"
        inbounds = [
            Inbound(
                type="mixed",
                tag="mixed-in",
                listen=listen,
                listen_port=settings.mixed_port,
                sniff=True,
                sniff_override_destination=True,
            )
        ]
        if settings.tun_enabled:
            inbounds.append(Inbound(
                type="tun",
                tag="tun-in",
                address=list(TUN_ADDRESSES),
                auto_route=True,
                strict_route=True,
                stack="system",
                sniff=True,
                sniff_override_destination=True,
            ))
        return inbounds

    def _build_experimental(self, settings: Settings) -> Optional[ExperimentalConfig]:
        if settings.clash_api_port <= 0:
            return None

        listen = "0.0.0.0" if settings.allow_lan else "127.0.0.1"
        # The controller is only exposed beyond loopback when LAN access is on
        secret = settings.clash_api_secret if settings.allow_lan and settings.clash_api_secret else None
        return ExperimentalConfig(
            clash_api=ClashAPIConfig(
                external_controller=f"{listen}:{settings.clash_api_port}",
                external_ui=settings.clash_ui_path or None,
                external_ui_download_url=CLASH_UI_DOWNLOAD_URL,
                secret=secret,
                default_mode="rule",
            ),
            cache_file=CacheFileConfig(enabled=True, path="cache.db", store_fakeip=True),
        )
