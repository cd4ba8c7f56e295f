from sbmanager.utils.country import OTHER, country_emoji, country_label, country_name, detect_country
from sbmanager.utils.hosts import parse_hosts, read_system_hosts


def test_detect_country_from_flag_words_and_codes():
    assert detect_country("🇯🇵 Node 01") == "JP"
    assert detect_country("香港 IPLC 02") == "HK"
    assert detect_country("Frankfurt premium") == "DE"
    assert detect_country("Premium UK 02") == "GB"
    assert detect_country("SG-03") == "SG"


def test_detect_country_avoids_substring_codes():
    assert detect_country("Duke relay") is None
    assert detect_country("bus-01") is None
    assert detect_country("") is None


def test_country_lookups():
    assert country_emoji("HK") == "🇭🇰"
    assert country_name("US") == "United States"
    assert country_label("JP") == "🇯🇵 Japan"
    assert country_label(OTHER) == "🌐 Other"
    assert country_name("ZZ") == "ZZ"


def test_parse_hosts():
    content = """
    # comment
    127.0.0.1   localhost
    ::1         localhost ip6-localhost
    192.168.1.5 nas.lan nas  # trailing
    192.168.1.6 nas.lan
    bogus
    """
    assert parse_hosts(content) == {
        "ip6-localhost": ["::1"],
        "nas.lan": ["192.168.1.5", "192.168.1.6"],
        "nas": ["192.168.1.5"],
    }


def test_read_system_hosts(tmp_path):
    path = tmp_path / "hosts"
    path.write_text("10.0.0.1 router.lan\n", encoding="utf-8")
    assert read_system_hosts(str(path)) == {"router.lan": ["10.0.0.1"]}
    assert read_system_hosts(str(tmp_path / "missing")) == {}
