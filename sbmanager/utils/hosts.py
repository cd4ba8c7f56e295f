import logging
from typing import Dict, List

logger = logging.getLogger(__name__)

SYSTEM_HOSTS_PATH = "/etc/hosts"


def parse_hosts(content: str) -> Dict[str, List[str]]:
    """
    Parse hosts-file content into an ordered domain -> [ip, ...] map.
    localhost entries are skipped since the engine resolves them itself.
    """
    hosts: Dict[str, List[str]] = {}
    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue

        fields = line.split()
        if len(fields) < 2:
            continue

        ip = fields[0]
        for domain in fields[1:]:
            if domain == "localhost" or domain.endswith(".localhost"):
                continue
            ips = hosts.setdefault(domain, [])
            if ip not in ips:
                ips.append(ip)
    return hosts


def read_system_hosts(path: str = SYSTEM_HOSTS_PATH) -> Dict[str, List[str]]:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as file:
            return parse_hosts(file.read())
    except OSError as e:
        logger.debug(f"System hosts file {path} not readable: {e}")
        return {}
