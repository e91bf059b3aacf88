import pytest
from pydantic import ValidationError

from settings import IndexMode, RouterSettings, ServerSettings, parse_int


def test_parse_int_is_strict():
    assert parse_int("12") == 12
    assert parse_int("-3") == -3
    assert parse_int("+4") == 4
    for bad in [None, "", " 1", "1 ", "7\n", "1.5", "0x10", "1_0", "abc"]:
        assert parse_int(bad) is None


def test_defaults_with_empty_environment():
    s = ServerSettings.from_env({}, hostname="box")
    assert s.port == 8081
    assert s.self_hostport == "box:8081"
    assert s.template is None
    assert s.peers == ()
    assert s.replica_set.replicas == 1
    assert s.replica_set.index_base == 1
    assert s.replica_set.index_mode == IndexMode.HASH


def test_scaled_configuration():
    env = {
        "PORT": "9090",
        "SERVICE_PREFIX": "server",
        "SERVICE_SUFFIX": ".server-headless.ns.svc.cluster.local",
        "REPLICAS": "3",
        "INDEX_MODE": " Numeric ",
        "INDEX_BASE": "0",
    }
    s = ServerSettings.from_env(env, hostname="server-0")
    assert s.port == 9090
    assert s.template.prefix == "server"
    assert s.template.suffix == ".server-headless.ns.svc.cluster.local"
    assert s.template.port == 9090
    assert s.replica_set.replicas == 3
    assert s.replica_set.index_base == 0
    assert s.replica_set.index_mode == IndexMode.NUMERIC


@pytest.mark.parametrize("value", ["0", "-2", "three", "", "2.5", "3\n"])
def test_bad_replicas_become_one(value):
    s = ServerSettings.from_env({"REPLICAS": value}, hostname="h")
    assert s.replica_set.replicas == 1


def test_bad_index_base_and_mode_use_defaults():
    s = ServerSettings.from_env({"INDEX_BASE": "one", "INDEX_MODE": "modulo"}, hostname="h")
    assert s.replica_set.index_base == 1
    assert s.replica_set.index_mode == IndexMode.HASH


def test_bad_port_uses_default():
    assert ServerSettings.from_env({"PORT": "http"}, hostname="h").port == 8081


def test_empty_prefix_means_unset():
    s = ServerSettings.from_env({"SERVICE_PREFIX": "", "SERVER_PEERS": "a:1, ,b:2,"}, hostname="h")
    assert s.template is None
    assert s.peers == ("a:1", "b:2")


def test_settings_are_frozen():
    s = ServerSettings.from_env({}, hostname="h")
    with pytest.raises(ValidationError):
        s.port = 1


def test_router_settings_from_env_and_overrides():
    env = {"POOL_URLS": "http://a:8081, http://b:8081", "ROUTER_PORT": "10001", "RESOLVER_TIMEOUT": "0.5"}
    s = RouterSettings.from_env(env)
    assert s.pool == ("http://a:8081", "http://b:8081")
    assert s.port == 10001
    assert s.resolver_timeout == 0.5
    assert s.join_prefix == "/join"

    s = RouterSettings.from_env(env, port=12000, join_prefix=None)
    assert s.port == 12000
    assert s.join_prefix == "/join"


def test_router_settings_ignore_bad_floats():
    s = RouterSettings.from_env({"DNS_TTL": "soon"})
    assert s.dns_ttl == 5.0
