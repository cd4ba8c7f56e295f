from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

DEFAULT_URLTEST_URL = "https://www.gstatic.com/generate_204"
DEFAULT_URLTEST_INTERVAL = "5m"
DEFAULT_URLTEST_TOLERANCE = 50

RuleType = Literal["domain_suffix", "domain_keyword", "domain", "ip_cidr", "port", "geosite", "geoip"]


def new_id() -> str:
    return str(uuid4())


class Node(BaseModel):
    tag: str
    type: str
    server: str
    server_port: int
    country: str = ""
    country_emoji: str = ""
    # protocol specific fields, merged into the outbound verbatim
    extra: Dict[str, Any] = {}


class Traffic(BaseModel):
    total: int = 0
    used: int = 0
    remaining: int = 0


class Subscription(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    url: str
    node_count: int = 0
    updated_at: Optional[datetime] = None
    expire_at: Optional[datetime] = None
    traffic: Optional[Traffic] = None
    nodes: List[Node] = []
    enabled: bool = True


class ManualNode(BaseModel):
    id: str = Field(default_factory=new_id)
    node: Node
    enabled: bool = True


class URLTestConfig(BaseModel):
    url: str = DEFAULT_URLTEST_URL
    interval: str = DEFAULT_URLTEST_INTERVAL
    tolerance: int = DEFAULT_URLTEST_TOLERANCE


class Filter(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    include: List[str] = []
    exclude: List[str] = []
    include_countries: List[str] = []
    exclude_countries: List[str] = []
    mode: Literal["urltest", "selector"] = "urltest"
    urltest_config: Optional[URLTestConfig] = None
    enabled: bool = True

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, value: Any) -> Any:
        if value == "select":
            return "selector"
        return value


class Rule(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    rule_type: RuleType
    values: List[str] = []
    outbound: str
    enabled: bool = True
    priority: int = 0


class RuleGroup(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    site_rules: List[str] = []
    ip_rules: List[str] = []
    outbound: str = "Proxy"
    enabled: bool = True


class HostEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    domain: str
    ips: List[str] = []
    enabled: bool = True


class Settings(BaseModel):
    singbox_path: str = "bin/sing-box"
    config_path: str = "generated/config.json"

    mixed_port: int = 2080
    tun_enabled: bool = True
    allow_lan: bool = False

    proxy_dns: str = "https://1.1.1.1/dns-query"
    direct_dns: str = "https://dns.alidns.com/dns-query"
    hosts: List[HostEntry] = []

    clash_api_port: int = 9091
    clash_ui_path: str = "zashboard"
    clash_api_secret: str = ""

    final_outbound: str = "Proxy"

    ruleset_base_url: str = "https://github.com/lyc8503/sing-box-rules/raw/rule-set-geosite"
    github_proxy: str = ""

    auto_apply: bool = True
    subscription_interval: int = 60

    health_check_enabled: bool = False
    health_check_interval: int = 30
    health_check_auto_restart: bool = True


class CountryGroup(BaseModel):
    code: str
    name: str
    emoji: str
    node_count: int


class AppData(BaseModel):
    subscriptions: List[Subscription] = []
    manual_nodes: List[ManualNode] = []
    filters: List[Filter] = []
    rules: List[Rule] = []
    rule_groups: List[RuleGroup] = []
    settings: Settings = Field(default_factory=Settings)


def default_rule_groups() -> List[RuleGroup]:
    return [
        RuleGroup(id="ad-block", name="Ad Block", site_rules=["category-ads-all"], outbound="REJECT"),
        RuleGroup(id="ai-services", name="AI Services", site_rules=["openai", "anthropic", "jetbrains-ai"]),
        RuleGroup(id="google", name="Google", site_rules=["google"], ip_rules=["google"]),
        RuleGroup(id="youtube", name="YouTube", site_rules=["youtube"]),
        RuleGroup(id="github", name="GitHub", site_rules=["github"]),
        RuleGroup(id="telegram", name="Telegram", site_rules=["telegram"], ip_rules=["telegram"]),
        RuleGroup(id="twitter", name="Twitter", site_rules=["twitter"]),
        RuleGroup(id="netflix", name="Netflix", site_rules=["netflix"], enabled=False),
        RuleGroup(id="spotify", name="Spotify", site_rules=["spotify"], enabled=False),
        RuleGroup(id="apple", name="Apple", site_rules=["apple"], outbound="DIRECT"),
        RuleGroup(id="microsoft", name="Microsoft", site_rules=["microsoft"], outbound="DIRECT"),
        RuleGroup(id="cn", name="China", site_rules=["geolocation-cn"], ip_rules=["cn"], outbound="DIRECT"),
        RuleGroup(id="private", name="Private Network", site_rules=["private"], ip_rules=["private"], outbound="DIRECT"),
    ]
