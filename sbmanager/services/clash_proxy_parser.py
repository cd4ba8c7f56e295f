from typing import Any, Dict, List, Optional
import logging
from yaml import safe_load, YAMLError

from sbmanager.core.errors import SubscriptionError
from sbmanager.schemas.entities import Node
from sbmanager.utils.country import country_emoji, detect_country

logger = logging.getLogger(__name__)

LINK_SCHEMES = ("ss://", "ssr://", "vmess://", "vless://", "trojan://", "hysteria2://", "hy2://", "tuic://", "socks://")


def parse_bandwidth(value: Any) -> int:
    """'100', '100 Mbps', '100M' -> 100. Anything unparsable -> 0."""
    text = str(value).strip().lower()
    for suffix in ("mbps", "m"):
        if text.endswith(suffix):
            text = text[:-len(suffix)].strip()
            break
    try:
        mbps = int(text)
    except ValueError:
        return 0
    return mbps if mbps > 0 else 0


def _server_name(proxy: Dict[str, Any]) -> str:
    return proxy.get("sni") or proxy.get("servername") or proxy.get("server", "")


def _build_tls(proxy: Dict[str, Any]) -> Dict[str, Any]:
    tls: Dict[str, Any] = {"enabled": True, "server_name": _server_name(proxy)}
    if proxy.get("skip-cert-verify"):
        tls["insecure"] = True
    if proxy.get("alpn"):
        tls["alpn"] = list(proxy["alpn"])
    if proxy.get("client-fingerprint") or proxy.get("fingerprint"):
        tls["utls"] = {
            "enabled": True,
            "fingerprint": proxy.get("client-fingerprint") or proxy.get("fingerprint"),
        }

    reality_opts = proxy.get("reality-opts")
    if isinstance(reality_opts, dict):
        reality: Dict[str, Any] = {"enabled": True}
        if reality_opts.get("public-key"):
            reality["public_key"] = reality_opts["public-key"]
        if reality_opts.get("short-id"):
            reality["short_id"] = str(reality_opts["short-id"])
        tls["reality"] = reality
    return tls


def _build_transport(proxy: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    network = proxy.get("network") or "tcp"
    has_opts = any(key in proxy for key in ("ws-opts", "h2-opts", "grpc-opts"))
    if network == "tcp" and not has_opts:
        return None

    transport: Dict[str, Any] = {"type": network}
    if network == "ws":
        opts = proxy.get("ws-opts") or {}
        if opts.get("path"):
            transport["path"] = opts["path"]
        if opts.get("headers"):
            transport["headers"] = dict(opts["headers"])
        if opts.get("max-early-data"):
            transport["max_early_data"] = int(opts["max-early-data"])
        if opts.get("early-data-header-name"):
            transport["early_data_header_name"] = opts["early-data-header-name"]
    elif network == "h2":
        opts = proxy.get("h2-opts") or {}
        if opts.get("path"):
            transport["path"] = opts["path"]
        if opts.get("host"):
            transport["host"] = list(opts["host"])
    elif network == "http":
        opts = proxy.get("http-opts") or {}
        if opts.get("method"):
            transport["method"] = opts["method"]
        if opts.get("path"):
            transport["path"] = opts["path"][0]
        if opts.get("headers"):
            transport["headers"] = dict(opts["headers"])
    elif network == "grpc":
        opts = proxy.get("grpc-opts") or {}
        if opts.get("grpc-service-name"):
            transport["service_name"] = opts["grpc-service-name"]
    return transport


def convert_clash_proxy(proxy: Dict[str, Any]) -> Node:
    """
    Converts one Clash `proxies` entry into a Node whose extra map holds the
    sing-box outbound fields for that protocol.
    Raises:
        ValueError: Unsupported type or missing server/port.
    """
    proxy_type = str(proxy.get("type", "")).lower()
    extra: Dict[str, Any] = {}

    if proxy_type in ("ss", "shadowsocks"):
        node_type = "shadowsocks"
        extra["method"] = proxy.get("cipher", "")
        extra["password"] = proxy.get("password", "")
        if proxy.get("plugin"):
            extra["plugin"] = proxy["plugin"]
            if proxy.get("plugin-opts"):
                extra["plugin_opts"] = proxy["plugin-opts"]
    elif proxy_type == "vmess":
        node_type = "vmess"
        extra["uuid"] = proxy.get("uuid", "")
        extra["alter_id"] = int(proxy.get("alterId", 0) or 0)
        extra["security"] = proxy.get("cipher") or "auto"
    elif proxy_type == "vless":
        node_type = "vless"
        extra["uuid"] = proxy.get("uuid", "")
        if proxy.get("flow"):
            extra["flow"] = proxy["flow"]
    elif proxy_type == "trojan":
        node_type = "trojan"
        extra["password"] = proxy.get("password", "")
    elif proxy_type in ("hysteria2", "hy2"):
        node_type = "hysteria2"
        password = proxy.get("password") or proxy.get("auth")
        if password:
            extra["password"] = password
        if proxy.get("obfs") and proxy.get("obfs-password"):
            extra["obfs"] = {"type": proxy["obfs"], "password": proxy["obfs-password"]}
        for key, field in (("up", "up_mbps"), ("down", "down_mbps")):
            if proxy.get(key):
                mbps = parse_bandwidth(proxy[key])
                if mbps:
                    extra[field] = mbps
    elif proxy_type == "tuic":
        node_type = "tuic"
        extra["uuid"] = proxy.get("uuid", "")
        extra["password"] = proxy.get("password", "")
        if proxy.get("congestion-controller"):
            extra["congestion_control"] = proxy["congestion-controller"]
        if proxy.get("udp-relay-mode"):
            extra["udp_relay_mode"] = proxy["udp-relay-mode"]
        if proxy.get("reduce-rtt"):
            extra["zero_rtt_handshake"] = True
    elif proxy_type in ("socks", "socks5", "socks4"):
        node_type = "socks"
        extra["version"] = "4" if proxy_type == "socks4" else "5"
        if proxy.get("username"):
            extra["username"] = proxy["username"]
        if proxy.get("password") and proxy_type != "socks4":
            extra["password"] = proxy["password"]
    else:
        raise ValueError(f"Unsupported proxy type: {proxy.get('type')}")

    server = proxy.get("server")
    try:
        port = int(proxy.get("port", 0))
    except (TypeError, ValueError):
        port = 0
    if not server or not 0 < port <= 65535:
        raise ValueError(f"Proxy '{proxy.get('name')}' has no valid server/port")

    transport = _build_transport(proxy)
    if transport:
        extra["transport"] = transport

    # hysteria2 and tuic are always TLS
    if proxy.get("tls") or node_type in ("hysteria2", "tuic"):
        extra["tls"] = _build_tls(proxy)

    name = str(proxy.get("name") or f"{server}:{port}")
    country = detect_country(name) or ""
    return Node(
        tag=name,
        type=node_type,
        server=str(server),
        server_port=port,
        country=country,
        country_emoji=country_emoji(country) if country else "",
        extra=extra,
    )


def parse_clash_yaml(content: str) -> List[Node]:
    """
    Parses a Clash YAML document into nodes. Unsupported entries are skipped.
    Raises:
        SubscriptionError: The content is not a Clash document with proxies.
    """
    stripped = content.strip()
    if stripped.startswith(LINK_SCHEMES):
        raise SubscriptionError("Raw share links are not supported. Use a Clash (YAML) subscription URL.")

    try:
        document = safe_load(content)
    except YAMLError as e:
        logger.warning(f"Failed to parse YAML: {e}")
        document = None

    if not isinstance(document, dict) or "proxies" not in document:
        detail = "Invalid subscription format. URL must return a Clash YAML configuration."
        if isinstance(document, str) or document is None:
            detail += " Detected non-YAML content (possibly Base64 share links)."
        raise SubscriptionError(detail)

    nodes = []
    for proxy in document.get("proxies") or []:
        if not isinstance(proxy, dict):
            continue
        try:
            nodes.append(convert_clash_proxy(proxy))
        except ValueError as e:
            logger.debug(f"Skipping proxy: {e}")
    return nodes
