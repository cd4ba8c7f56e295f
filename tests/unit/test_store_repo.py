import json
import os

import pytest

from helpers import make_node
from sbmanager.core.errors import ConfigurationError, EntityNotFoundError
from sbmanager.repos.store_repo import DATA_FILE_NAME, JSONStore
from sbmanager.schemas.entities import Filter, ManualNode, Rule, Subscription


def test_fresh_store_has_defaults_on_disk(store, data_dir):
    assert os.path.exists(os.path.join(data_dir, DATA_FILE_NAME))
    assert store.get_rule_groups()
    assert store.get_settings().config_path == "generated/config.json"
    assert store.get_subscriptions() == []


def test_mutations_survive_reload(store, data_dir):
    store.add_filter(Filter(name="stream", include=["HK"]))
    store.add_rule(Rule(rule_type="domain", values=["a.com"], outbound="DIRECT"))

    reloaded = JSONStore(data_dir)

    assert [f.name for f in reloaded.get_filters()] == ["stream"]
    assert reloaded.get_rules()[0].values == ["a.com"]


def test_accessors_return_copies(store):
    store.add_filter(Filter(name="stream"))

    filters = store.get_filters()
    filters[0].name = "changed"
    settings = store.get_settings()
    settings.mixed_port = 1

    assert store.get_filters()[0].name == "stream"
    assert store.get_settings().mixed_port != 1


def test_update_and_delete_missing_entities_raise(store):
    with pytest.raises(EntityNotFoundError):
        store.update_filter(Filter(id="nope", name="x"))
    with pytest.raises(EntityNotFoundError):
        store.delete_rule("nope")
    with pytest.raises(EntityNotFoundError):
        store.get_subscription("nope")
    with pytest.raises(EntityNotFoundError):
        store.delete_manual_node("nope")
    assert store.find_subscription("nope") is None


def test_update_rule_group(store):
    group = store.get_rule_groups()[0]
    group.outbound = "DIRECT"
    store.update_rule_group(group)
    assert store.get_rule_groups()[0].outbound == "DIRECT"


def test_all_nodes_skips_disabled_sources(store):
    store.add_subscription(Subscription(name="on", url="https://a", nodes=[make_node("sub-1", "HK")]))
    store.add_subscription(Subscription(name="off", url="https://b", nodes=[make_node("sub-2", "HK")], enabled=False))
    store.add_manual_node(ManualNode(node=make_node("manual-1", "US")))
    store.add_manual_node(ManualNode(node=make_node("manual-2", "US"), enabled=False))

    assert [n.tag for n in store.get_all_nodes()] == ["sub-1", "manual-1"]
    assert [n.tag for n in store.snapshot().nodes] == ["sub-1", "manual-1"]


def test_country_views(store):
    store.add_manual_node(ManualNode(node=make_node("us", "US")))
    store.add_manual_node(ManualNode(node=make_node("hk-1", "hk")))
    store.add_manual_node(ManualNode(node=make_node("hk-2", "HK")))
    store.add_manual_node(ManualNode(node=make_node("mystery")))

    groups = store.get_country_groups()
    assert [(g.code, g.node_count) for g in groups] == [("HK", 2), ("OTHER", 1), ("US", 1)]
    assert [n.tag for n in store.get_nodes_by_country("hk")] == ["hk-1", "hk-2"]
    assert [n.tag for n in store.get_nodes_by_country("OTHER")] == ["mystery"]


def test_legacy_paths_are_migrated(data_dir):
    with open(os.path.join(data_dir, DATA_FILE_NAME), "w", encoding="utf-8") as file:
        json.dump({"settings": {"singbox_path": "data/bin/sing-box", "config_path": "data/generated/config.json"}}, file)

    store = JSONStore(data_dir)

    assert store.get_settings().singbox_path == "bin/sing-box"
    assert store.get_settings().config_path == "generated/config.json"
    assert store.get_rule_groups()
    with open(os.path.join(data_dir, DATA_FILE_NAME), encoding="utf-8") as file:
        assert json.load(file)["settings"]["singbox_path"] == "bin/sing-box"


def test_corrupt_data_file_is_a_configuration_error(data_dir):
    with open(os.path.join(data_dir, DATA_FILE_NAME), "w", encoding="utf-8") as file:
        file.write("{not json")
    with pytest.raises(ConfigurationError):
        JSONStore(data_dir)
