import sys
import time

import pytest

from sbmanager.schemas.entities import Node

FAKE_ENGINE = """#!/bin/sh
case "$1" in
  version)
    echo "sing-box version 1.11.0-fake"
    ;;
  check)
    if grep -q '"outbounds"' "$3"; then
      exit 0
    fi
    echo "FATAL decode config: missing outbounds" >&2
    exit 1
    ;;
  run)
    trap 'echo "reload requested"' HUP
    trap 'exit 0' TERM
    echo "sing-box started"
    while true; do
      sleep 0.1
    done
    ;;
esac
"""

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake engine is a POSIX shell script")


def make_node(tag: str, country: str = "", node_type: str = "shadowsocks", **extra) -> Node:
    return Node(
        tag=tag,
        type=node_type,
        server=f"{tag.lower()}.example.com",
        server_port=443,
        country=country,
        extra=extra or {"method": "aes-128-gcm", "password": "secret"},
    )


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
