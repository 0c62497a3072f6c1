import ssl

import pytest

from clamd_gateway.clamd import ClamdOptions, InvalidArgumentError


def test_defaults():
    options = ClamdOptions()

    assert options.network == "unix"
    assert options.address == "/tmp/clamd.sock"
    assert options.chunk_size == 1024
    assert options.max_retries == 3


@pytest.mark.parametrize("address,expected", [
    ("localhost:3310", ("localhost", 3310)),
    ("10.0.0.1:1234", ("10.0.0.1", 1234)),
    ("clamd.internal", ("clamd.internal", 3310)),
    ("[::1]:3311", ("::1", 3311)),
    ("[::1]", ("::1", 3310)),
])
def test_host_port(address, expected):
    assert ClamdOptions(network="tcp", address=address).host_port() == \
        expected


def test_invalid_port():
    with pytest.raises(InvalidArgumentError):
        ClamdOptions(network="tcp", address="localhost:clamd").host_port()


@pytest.mark.parametrize("kwargs", [
    {"network": "udp"},
    {"address": ""},
    {"chunk_size": 0},
    {"recv_buffer_size": -1},
    {"cancel_check_interval": 0},
    {"min_retry_backoff": 1, "max_retry_backoff": 0.5},
    {"tls_context": ssl.create_default_context()},
    {"dial_timeout": 0},
    {"read_timeout": -1},
    {"read_timeout": 0},
    {"write_timeout": -0.5},
])
def test_invalid_options(kwargs):
    with pytest.raises(InvalidArgumentError):
        ClamdOptions(**kwargs)


def test_timeouts_may_be_disabled():
    options = ClamdOptions(dial_timeout=None, read_timeout=None,
                           write_timeout=None)

    assert options.read_timeout is None


def test_from_config_negative_timeout():
    with pytest.raises(InvalidArgumentError):
        ClamdOptions.from_config({"CLAMD_READ_TIMEOUT": "-1"})


def test_options_are_immutable():
    options = ClamdOptions()

    with pytest.raises(AttributeError):
        options.address = "/elsewhere"


def test_from_config_unix():
    options = ClamdOptions.from_config({
        "CLAMD_SOCKET_PATH": "/var/run/clamav/clamd.ctl",
        "CLAMD_READ_TIMEOUT": "12.5",
        "CLAMD_MAX_RETRIES": 5,
    })

    assert options.network == "unix"
    assert options.address == "/var/run/clamav/clamd.ctl"
    assert options.read_timeout == 12.5
    assert options.max_retries == 5


def test_from_config_tcp():
    options = ClamdOptions.from_config({
        "CLAMD_HOST": "clamd",
        "CLAMD_PORT": 3310,
        "CLAMD_SOCKET_PATH": "/ignored.sock",
        "CLAMD_CHUNK_SIZE": "4096",
    })

    assert options.network == "tcp"
    assert options.address == "clamd:3310"
    assert options.chunk_size == 4096
    assert options.tls_context is None


def test_from_config_tls():
    options = ClamdOptions.from_config({
        "CLAMD_HOST": "clamd",
        "CLAMD_PORT": "3310",
        "CLAMD_TLS": "true",
        "CLAMD_TLS_SERVER_HOSTNAME": "clamd.example.com",
    })

    assert isinstance(options.tls_context, ssl.SSLContext)
    assert options.tls_server_hostname == "clamd.example.com"


def test_from_config_defaults():
    assert ClamdOptions.from_config({}) == ClamdOptions()


def test_from_config_invalid_value():
    with pytest.raises(InvalidArgumentError):
        ClamdOptions.from_config({"CLAMD_MAX_RETRIES": "many"})
