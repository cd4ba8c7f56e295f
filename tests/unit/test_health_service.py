import threading

import httpx
import pytest

from helpers import wait_for
from sbmanager.core.errors import ConfigurationError
from sbmanager.schemas.entities import Settings
from sbmanager.services.health_service import HealthChecker


class FakeSupervisor:
    def __init__(self, running=True, restart_error=None):
        self.running = running
        self.restart_error = restart_error
        self.restarts = 0
        self.lock = threading.Lock()

    def is_running(self):
        return self.running

    def restart(self):
        with self.lock:
            self.restarts += 1
        if self.restart_error:
            raise self.restart_error


class ClashAPI:
    """Answers /version with a fixed status code and records each request."""

    def __init__(self, status_code=200):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path != "/version":
            return httpx.Response(404)
        return httpx.Response(self.status_code, json={"version": "sing-box 1.11.0"})

    @property
    def transport(self):
        return httpx.MockTransport(self)


def _settings(**overrides):
    values = {"health_check_enabled": True, "clash_api_port": 9091}
    values.update(overrides)
    return Settings(**values)


def _checker(supervisor, api, **overrides):
    checker = HealthChecker(supervisor, transport=api.transport)
    checker.configure(_settings(**overrides))
    return checker


def test_healthy_engine_resets_failures():
    api = ClashAPI(status_code=200)
    checker = _checker(FakeSupervisor(), api)

    assert checker.check() is True
    assert str(api.requests[0].url) == "http://127.0.0.1:9091/version"
    assert "authorization" not in api.requests[0].headers
    status = checker.status()
    assert status["fail_count"] == 0
    assert status["last_check_result"] is True
    assert status["last_check_time"] is not None


def test_restart_after_failure_threshold():
    supervisor = FakeSupervisor()
    api = ClashAPI(status_code=503)
    checker = _checker(supervisor, api)

    assert checker.check() is False
    assert checker.check() is False
    assert supervisor.restarts == 0
    assert checker.status()["fail_count"] == 2

    assert checker.check() is False
    assert supervisor.restarts == 1
    assert checker.status()["fail_count"] == 0


def test_success_in_between_restarts_the_count():
    supervisor = FakeSupervisor()
    api = ClashAPI(status_code=503)
    checker = _checker(supervisor, api)

    checker.check()
    checker.check()
    api.status_code = 200
    checker.check()
    api.status_code = 503
    checker.check()
    checker.check()

    assert supervisor.restarts == 0
    assert checker.status()["fail_count"] == 2


def test_no_restart_when_auto_restart_is_off():
    supervisor = FakeSupervisor()
    checker = _checker(supervisor, ClashAPI(status_code=500), health_check_auto_restart=False)

    for _ in range(5):
        checker.check()

    assert supervisor.restarts == 0
    assert checker.status()["fail_count"] == 5


def test_failed_restart_keeps_counting():
    supervisor = FakeSupervisor(restart_error=ConfigurationError("binary missing"))
    checker = _checker(supervisor, ClashAPI(status_code=500))

    for _ in range(3):
        checker.check()

    assert supervisor.restarts == 1
    assert checker.status()["fail_count"] == 3


def test_unreachable_api_counts_as_failure():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    checker = HealthChecker(FakeSupervisor(), transport=httpx.MockTransport(refuse))
    checker.configure(_settings())

    assert checker.check() is False
    assert checker.status()["fail_count"] == 1


def test_stopped_engine_is_not_checked():
    api = ClashAPI()
    checker = _checker(FakeSupervisor(running=False), api)

    assert checker.check() is None
    assert api.requests == []
    assert checker.status()["last_check_time"] is None


def test_disabled_controller_is_always_healthy():
    api = ClashAPI(status_code=500)
    checker = _checker(FakeSupervisor(), api, clash_api_port=0)

    assert checker.check() is True
    assert api.requests == []


@pytest.mark.parametrize("allow_lan, expected", [(True, "Bearer s3cret"), (False, None)])
def test_secret_sent_only_when_config_carries_it(allow_lan, expected):
    api = ClashAPI()
    checker = _checker(FakeSupervisor(), api, allow_lan=allow_lan, clash_api_secret="s3cret")

    checker.check()

    assert api.requests[0].headers.get("authorization") == expected


def test_interval_has_a_floor():
    checker = HealthChecker(FakeSupervisor())
    checker.configure(_settings(health_check_interval=0))
    assert checker.interval == 5


def test_background_loop_restarts_unresponsive_engine():
    supervisor = FakeSupervisor()
    checker = _checker(supervisor, ClashAPI(status_code=503))
    checker.interval = 0.02

    checker.start()
    try:
        assert checker.status()["running"]
        assert wait_for(lambda: supervisor.restarts >= 1)
    finally:
        checker.stop()
    assert not checker.status()["running"]


def test_disabled_checker_does_not_start():
    checker = _checker(FakeSupervisor(), ClashAPI(), health_check_enabled=False)
    checker.start()
    assert not checker.status()["running"]

    checker.reconfigure(_settings())
    try:
        assert checker.status()["running"]
        assert checker.status()["enabled"]
    finally:
        checker.stop()
