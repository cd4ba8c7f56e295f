from pydantic import BaseModel
from typing import List, Optional, Dict, Any


class LogConfig(BaseModel):
    level: str = "info"
    timestamp: bool = True
    output: Optional[str] = None


class DNSServer(BaseModel):
    tag: str
    type: str
    server: Optional[str] = None
    server_port: Optional[int] = None
    path: Optional[str] = None
    detour: Optional[str] = None
    inet4_range: Optional[str] = None
    inet6_range: Optional[str] = None
    predefined: Optional[Dict[str, Any]] = None


class DNSRule(BaseModel):
    outbound: Optional[str] = None
    rule_set: Optional[List[str]] = None
    query_type: Optional[List[str]] = None
    domain: Optional[List[str]] = None
    server: Optional[str] = None
    action: Optional[str] = None


class DNSConfig(BaseModel):
    strategy: str = "prefer_ipv4"
    servers: List[DNSServer] = []
    rules: List[DNSRule] = []
    final: Optional[str] = None
    independent_cache: bool = True


class NTPConfig(BaseModel):
    enabled: bool = True
    server: Optional[str] = None


class Inbound(BaseModel):
    type: str
    tag: str
    listen: Optional[str] = None
    listen_port: Optional[int] = None
    address: Optional[List[str]] = None
    auto_route: Optional[bool] = None
    strict_route: Optional[bool] = None
    stack: Optional[str] = None
    sniff: Optional[bool] = None
    sniff_override_destination: Optional[bool] = None


class RuleSet(BaseModel):
    tag: str
    type: str = "remote"
    format: str = "binary"
    url: Optional[str] = None
    download_detour: Optional[str] = None


class DomainResolver(BaseModel):
    server: str
    rewrite_ttl: Optional[int] = None


class RouteConfig(BaseModel):
    # route rules are open maps keyed by match kind
    rules: List[Dict[str, Any]] = []
    rule_set: List[RuleSet] = []
    final: Optional[str] = None
    auto_detect_interface: bool = True
    default_domain_resolver: Optional[DomainResolver] = None


class ClashAPIConfig(BaseModel):
    external_controller: str
    external_ui: Optional[str] = None
    external_ui_download_url: Optional[str] = None
    secret: Optional[str] = None
    default_mode: str = "rule"


class CacheFileConfig(BaseModel):
    enabled: bool = True
    path: Optional[str] = None
    store_fakeip: bool = False


class ExperimentalConfig(BaseModel):
    clash_api: Optional[ClashAPIConfig] = None
    cache_file: Optional[CacheFileConfig] = None


class SingBoxConfig(BaseModel):
    log: LogConfig
    dns: DNSConfig
    ntp: NTPConfig
    inbounds: List[Inbound] = []
    # outbounds are open maps: type/tag/server/server_port plus protocol extras
    outbounds: List[Dict[str, Any]] = []
    route: RouteConfig
    experimental: Optional[ExperimentalConfig] = None
