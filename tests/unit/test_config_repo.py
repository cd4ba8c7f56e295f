import os

from sbmanager.repos.config_repo import ConfigRepo
from sbmanager.schemas.entities import Settings


def test_engine_paths_resolve_against_data_dir(data_dir):
    repo = ConfigRepo(data_dir)
    settings = Settings(singbox_path="/usr/local/bin/sing-box", config_path="generated/config.json")

    assert repo.engine_paths(settings) == (
        "/usr/local/bin/sing-box",
        os.path.join(data_dir, "generated", "config.json"),
    )


def test_write_config_replaces_file_and_leaves_no_temp_files(data_dir):
    repo = ConfigRepo(data_dir)

    repo.write_config("generated/config.json", "first")
    path = repo.write_config("generated/config.json", "second")

    with open(path, encoding="utf-8") as file:
        assert file.read() == "second"
    assert os.listdir(os.path.dirname(path)) == ["config.json"]


def test_read_config(data_dir):
    repo = ConfigRepo(data_dir)
    assert repo.read_config("generated/config.json") is None

    repo.write_config("generated/config.json", '{"log": {}}')
    assert repo.read_config("generated/config.json") == '{"log": {}}'


def test_staged_config_is_promoted_over_live_file(data_dir):
    repo = ConfigRepo(data_dir)
    repo.write_config("generated/config.json", "live")

    staged = repo.stage_config("generated/config.json", "next")
    assert repo.read_config("generated/config.json") == "live"
    assert os.path.basename(staged) == ".staged-config.json"

    repo.promote(staged, "generated/config.json")
    assert repo.read_config("generated/config.json") == "next"
    assert not os.path.exists(staged)


def test_discarded_stage_leaves_live_file(data_dir):
    repo = ConfigRepo(data_dir)
    repo.write_config("generated/config.json", "live")

    repo.discard(repo.stage_config("generated/config.json", "broken"))
    repo.discard(repo.staged_path("generated/config.json"))

    assert repo.read_config("generated/config.json") == "live"
    assert sorted(os.listdir(os.path.join(data_dir, "generated"))) == ["config.json"]
