import io
import socket
import time

from werkzeug.datastructures import FileStorage

from clamd_gateway import app

INFECTED = br"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


def test_ping(client):
    resp = client.get("/api/v1/clamav/ping")

    assert resp.status_code == 200
    resp_d = resp.json
    assert resp_d["status"] == "OK"
    assert resp_d["message"] == "PONG"
    assert resp_d["attempts"] == 1


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json["message"] == "PONG"


def test_ping_unexpected_reply(client, stub_clamd):
    stub_clamd.replies["PING"] = b"PANG\n"

    resp = client.get("/api/v1/clamav/ping")

    assert resp.status_code == 503
    assert resp.json["status"] == "KO"


def test_clamav_version(client):
    resp = client.get("/api/v1/clamav/version")

    assert resp.status_code == 200
    resp_d = resp.json
    assert resp_d["message"].startswith("ClamAV 1.4.2")


def test_clamav_versioncommands(client):
    resp = client.get("/api/v1/clamav/versioncommands")

    assert resp.status_code == 200
    resp_d = resp.json
    assert resp_d["version"].startswith("ClamAV 1.4.2")
    assert "INSTREAM" in resp_d["commands"]
    assert "PING" in resp_d["commands"]


def test_stats(client):
    resp = client.get("/api/v1/clamav/stats")

    assert resp.status_code == 200
    resp_d = resp.json
    assert resp_d["message"].startswith("POOLS: ")
    assert resp_d["details"][-1] == "END"


def test_reload(client, stub_clamd):
    resp = client.post("/api/v1/clamav/reload")

    assert resp.status_code == 200
    assert resp.json["message"] == "RELOADING"
    assert stub_clamd.received[0].command == "RELOAD"


def test_scan(client, stub_clamd):
    file_to_analyze = FileStorage(
        stream=io.BytesIO(b"just some text\n" * 200),
        filename="testfile.txt"
    )

    resp = client.post("/api/v1/clamav/scan",
                       data={"file": file_to_analyze},
                       content_type="multipart/form-data")

    assert resp.status_code == 200
    resp_d = resp.json

    assert resp_d["status"] == "OK"
    assert resp_d["virus"] is None
    assert resp_d["error"] is None
    assert resp_d["input_file"] == "testfile.txt"
    assert resp_d["file_size"] == 3000
    assert not resp_d["details"]
    assert stub_clamd.received[0].chunk_lengths == [1024, 1024, 952, 0]


def test_scan_infected(client):
    file_to_analyze = FileStorage(
        stream=io.BytesIO(INFECTED),
        filename="infected"
    )

    resp = client.post("/api/v1/clamav/scan",
                       data={"file": file_to_analyze},
                       content_type="multipart/form-data")

    assert resp.status_code == 200
    resp_d = resp.json

    assert resp_d["status"] == "FOUND"
    assert resp_d["virus"] == "Win.Test.EICAR_HDB-1"
    assert resp_d["input_file"] == "infected"
    assert "raw_data" not in resp_d
    assert not resp_d["details"]


def test_scan_raw_data(client, test_app):
    test_app.config["INCLUDE_RAW_DATA"] = "true"
    try:
        resp = client.post("/api/v1/clamav/scan",
                           data={"file": FileStorage(
                               stream=io.BytesIO(b"clean"),
                               filename="clean.txt")},
                           content_type="multipart/form-data")
    finally:
        test_app.config.pop("INCLUDE_RAW_DATA")

    assert resp.json["raw_data"] == "stream: OK\x00"


def test_scan_clamd_error(client, stub_clamd):
    stub_clamd.replies["INSTREAM"] = \
        b"INSTREAM size limit exceeded. ERROR\x00"

    resp = client.post("/api/v1/clamav/scan",
                       data={"file": FileStorage(
                           stream=io.BytesIO(b"big"),
                           filename="big.bin")},
                       content_type="multipart/form-data")

    assert resp.status_code == 500
    assert resp.json["status"] == "ERROR"
    assert resp.json["error"] == "INSTREAM size limit exceeded."


def test_scan_without_file(client):
    resp = client.post("/api/v1/clamav/scan",
                       data={},
                       content_type="multipart/form-data")

    assert resp.status_code == 400
    assert resp.json["error"] == "No file attached"


def test_clamd_unreachable(client, test_app):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    closed_port = sock.getsockname()[1]
    sock.close()
    test_app.config["CLAMD_PORT"] = closed_port
    test_app.config["CLAMD_MIN_RETRY_BACKOFF"] = 0
    test_app.config["CLAMD_MAX_RETRY_BACKOFF"] = 0
    test_app.extensions.pop("clamd", None)
    try:
        resp = client.get("/api/v1/clamav/version")
    finally:
        test_app.config.pop("CLAMD_MIN_RETRY_BACKOFF")
        test_app.config.pop("CLAMD_MAX_RETRY_BACKOFF")

    assert resp.status_code == 503
    assert "dial failed" in resp.json["error"]


def test_ping_clamd_unreachable(client, test_app):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    closed_port = sock.getsockname()[1]
    sock.close()
    test_app.config["CLAMD_PORT"] = closed_port
    test_app.extensions.pop("clamd", None)

    resp = client.get("/health")

    assert resp.status_code == 503
    assert resp.json["status"] == "KO"
    assert "dial failed" in resp.json["error"]


def test_ping_timeout(client, test_app, stub_clamd):
    # clamd never answers before the request deadline
    stub_clamd.replies["PING"] = lambda r: time.sleep(1) or b"PONG\n"
    test_app.config["REQUEST_TIMEOUT"] = 0.1

    resp = client.get("/api/v1/clamav/ping")

    assert resp.status_code == 503
    assert resp.json["status"] == "KO"
    assert resp.json["error"] == "exchange deadline exceeded"


def test_client_is_built_once(client, test_app):
    client.get("/api/v1/clamav/ping")
    clamd = test_app.extensions["clamd"]

    client.get("/api/v1/clamav/version")

    assert test_app.extensions["clamd"] is clamd


def test_not_found(client):
    resp = client.get("/api/v1/clamav/nope")

    assert resp.status_code == 404
    assert "error" in resp.json


def test_api_doc(client):
    resp = client.get("/api/v1/doc")

    assert resp.status_code == 200
    swag = resp.json
    assert swag["info"]["title"] == "clamd gateway"
    assert "/api/v1/clamav/scan" in swag["paths"]


def test_app_is_importable_as_module():
    assert app.name == "clamd_gateway"
