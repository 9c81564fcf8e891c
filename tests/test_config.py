import json

import pytest

from occupancy.config import (
    GlobalSettings,
    SiteConfig,
    load_sites_config,
    parse_global_settings,
    parse_sites,
    parse_switch,
)
from occupancy.errors import ConfigurationError


def test_global_settings_defaults_and_aliases():
    gs = GlobalSettings()
    assert gs.traffic_threshold_kbps == 50
    assert gs.session_timeout_minutes == 480
    assert gs.reset_hour_minute == (0, 0)
    assert gs.confirmation_polls_required == 2

    gs = parse_global_settings({"trafficThreshold": 75, "sessionResetTime": "6:30", "confirmationPolls": 3})
    assert gs.traffic_threshold_kbps == 75
    assert gs.reset_hour_minute == (6, 30)
    assert gs.confirmation_polls_required == 3


@pytest.mark.parametrize("raw", [
    {"sessionResetTime": "24:00"},
    {"sessionResetTime": "noon"},
    {"confirmationPolls": 0},
    {"refreshInterval": 0},
])
def test_invalid_global_settings(raw):
    with pytest.raises(ConfigurationError):
        parse_global_settings(raw)


def test_switch_lists_accept_csv_strings():
    sw = parse_switch({
        "ipAddress": " 10.0.0.1 ",
        "community": "public",
        "excludedVlans": "10, 20,",
        "excludedPorts": "Gi1/0/1,1/0/2",
    })
    assert sw.host == "10.0.0.1"
    assert sw.excluded_vlans == [10, 20]
    assert sw.excluded_ports == ["Gi1/0/1", "1/0/2"]
    assert sw.cache_key == "10.0.0.1:161"
    assert sw.label == "10.0.0.1"


def test_switch_requires_host_and_community():
    with pytest.raises(ConfigurationError):
        parse_switch({"community": "public"})
    with pytest.raises(ConfigurationError):
        parse_switch({"host": "10.0.0.1", "community": "  "})


def test_site_overrides_fall_back_to_global():
    gs = GlobalSettings(traffic_threshold_kbps=50, poll_interval_seconds=90)
    site = SiteConfig.model_validate({"id": 7, "trafficThreshold": 120})
    assert site.id == "7"
    assert site.threshold(gs) == 120
    assert site.interval(gs) == 90


def test_parse_sites_rejects_duplicates_and_garbage():
    with pytest.raises(ConfigurationError):
        parse_sites(None)
    with pytest.raises(ConfigurationError):
        parse_sites({"id": "hq"})
    with pytest.raises(ConfigurationError):
        parse_sites([{"id": "hq"}, {"id": "hq"}])
    with pytest.raises(ConfigurationError):
        parse_sites([{"name": "no id"}])
    assert [s.id for s in parse_sites([{"id": "hq"}, {"id": "branch"}])] == ["hq", "branch"]


def test_load_sites_config(tmp_path):
    assert load_sites_config(str(tmp_path / "missing.json")) == {"sites": [], "globalSettings": None}

    path = tmp_path / "sites-config.json"
    path.write_text(json.dumps({"sites": [{"id": "hq"}], "globalSettings": {"trafficThreshold": 10}}))
    config = load_sites_config(str(path))
    assert config["sites"] == [{"id": "hq"}]
    assert config["globalSettings"] == {"trafficThreshold": 10}

    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_sites_config(str(path))
