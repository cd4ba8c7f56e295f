import os
import stat

import pytest

from helpers import FAKE_ENGINE
from sbmanager.repos.store_repo import JSONStore
from sbmanager.schemas.entities import Settings


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return str(path)


@pytest.fixture
def store(data_dir):
    return JSONStore(data_dir)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def fake_engine(data_dir):
    """Writes an executable stand-in for sing-box and a config it accepts."""
    bin_dir = os.path.join(data_dir, "bin")
    os.makedirs(bin_dir, exist_ok=True)
    binary = os.path.join(bin_dir, "sing-box")
    with open(binary, "w") as file:
        file.write(FAKE_ENGINE)
    os.chmod(binary, os.stat(binary).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    config_dir = os.path.join(data_dir, "generated")
    os.makedirs(config_dir, exist_ok=True)
    config = os.path.join(config_dir, "config.json")
    with open(config, "w") as file:
        file.write('{"outbounds": []}')
    return binary, config
