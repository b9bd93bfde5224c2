"""Integration tests for plaintext HTTP/2 (h2c with prior knowledge)."""

import io
import json
import socket
import threading

import h2.config
import h2.connection
import h2.events
import h2.exceptions
import pytest

from h2probe import cli
from h2probe.config import RequestConfig
from h2probe.core import TransportError, execute
from h2probe.transport import DialMode, build_transport


def _respond(conn: h2.connection.H2Connection, stream_id: int, headers: list, body: bytes) -> None:
    request_headers = [(name.decode(), value.decode()) for name, value in headers]
    pseudo = {name: value for name, value in request_headers if name.startswith(":")}
    regular = [name for name, _ in request_headers if not name.startswith(":")]
    payload = json.dumps(
        {
            "method": pseudo.get(":method"),
            "path": pseudo.get(":path"),
            "authority": pseudo.get(":authority"),
            "scheme": pseudo.get(":scheme"),
            "header_names": regular,
            "content_length": dict(request_headers).get("content-length"),
            "body": body.decode("utf-8"),
        }
    ).encode("utf-8")
    conn.send_headers(
        stream_id,
        [
            (b":status", b"200"),
            (b"content-type", b"application/json"),
            (b"set-cookie", b"a=1"),
            (b"set-cookie", b"b=2"),
            (b"content-length", str(len(payload)).encode()),
        ],
    )
    conn.send_data(stream_id, payload, end_stream=True)


def _handle_connection(sock: socket.socket) -> None:
    conn = h2.connection.H2Connection(config=h2.config.H2Configuration(client_side=False))
    conn.initiate_connection()
    sock.sendall(conn.data_to_send())

    headers: dict[int, list] = {}
    bodies: dict[int, bytes] = {}
    with sock:
        while True:
            try:
                data = sock.recv(65535)
            except OSError:
                return
            if not data:
                return
            try:
                events = conn.receive_data(data)
            except h2.exceptions.ProtocolError:
                return
            for event in events:
                if isinstance(event, h2.events.RequestReceived):
                    headers[event.stream_id] = event.headers
                    bodies[event.stream_id] = b""
                elif isinstance(event, h2.events.DataReceived):
                    bodies[event.stream_id] += event.data
                    conn.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
                elif isinstance(event, h2.events.StreamEnded):
                    _respond(conn, event.stream_id, headers.pop(event.stream_id), bodies.pop(event.stream_id))
                elif isinstance(event, h2.events.ConnectionTerminated):
                    sock.sendall(conn.data_to_send())
                    return
            outgoing = conn.data_to_send()
            if outgoing:
                sock.sendall(outgoing)


@pytest.fixture(scope="module")
def h2c_server() -> str:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    listener.bind(("127.0.0.1", 0))
    listener.listen()

    def _serve() -> None:
        while True:
            try:
                client, _ = listener.accept()
            except OSError:
                return
            threading.Thread(target=_handle_connection, args=(client,), daemon=True).start()

    threading.Thread(target=_serve, daemon=True).start()
    host, port = listener.getsockname()
    yield f"http://{host}:{port}"
    listener.close()


def _run(config: RequestConfig, body=None) -> tuple[dict, dict]:
    transport = build_transport(config.url, skip_verify=config.skip_verify, http1=config.http1)
    try:
        envelope = execute(config, transport, body)
    finally:
        transport.close()
    data = envelope.as_dict()
    return data["headers"], json.loads(data["body"])


@pytest.mark.integration
def test_plaintext_http2_request_without_tls(h2c_server):
    transport = build_transport(h2c_server)
    assert transport.dial is DialMode.PLAINTEXT
    transport.close()

    headers, echoed = _run(RequestConfig(url=f"{h2c_server}/hello"))

    assert headers["status"] == "200"
    assert headers["set-cookie"] == ["a=1", "b=2"]
    assert headers["content-type"] == "application/json"
    assert echoed["method"] == "GET"
    assert echoed["path"] == "/hello"
    assert echoed["scheme"] == "http"


@pytest.mark.integration
def test_pseudo_headers_become_http2_pseudo_fields(h2c_server):
    config = RequestConfig(
        url=f"{h2c_server}/original",
        headers={":authority": "example.test", "method": "PUT", "path": "/rewritten", "x-trace": "1"},
    )

    _headers, echoed = _run(config)

    assert echoed["authority"] == "example.test"
    assert echoed["method"] == "PUT"
    assert echoed["path"] == "/rewritten"
    assert "x-trace" in echoed["header_names"]
    assert not {"authority", "method", "path", "host"} & set(echoed["header_names"])


@pytest.mark.integration
def test_buffered_post_has_content_length(h2c_server):
    config = RequestConfig(url=f"{h2c_server}/submit", method="POST", post=True)

    _headers, echoed = _run(config, io.BytesIO(b"buffered"))

    assert echoed["content_length"] == "8"
    assert echoed["body"] == "buffered"


@pytest.mark.integration
def test_streamed_post_has_no_content_length(h2c_server):
    config = RequestConfig(url=f"{h2c_server}/submit", method="POST", post=True, stream=True)

    _headers, echoed = _run(config, io.BytesIO(b"streamed"))

    assert echoed["content_length"] is None
    assert echoed["body"] == "streamed"


@pytest.mark.integration
def test_https_against_plaintext_server_fails(h2c_server):
    url = h2c_server.replace("http://", "https://")

    with pytest.raises(TransportError):
        _run(RequestConfig(url=url, timeout=2))


@pytest.mark.integration
def test_cli_emits_json_for_h2c(h2c_server):
    stdout = io.StringIO()

    exit_code = cli.main(["-url", f"{h2c_server}/cli"], stdout=stdout)

    assert exit_code == 0
    data = json.loads(stdout.getvalue())
    assert data["headers"]["status"] == "200"
    assert json.loads(data["body"])["path"] == "/cli"


@pytest.mark.integration
def test_cli_non_ascii_header_value_fails_without_output(h2c_server):
    stdout = io.StringIO()

    exit_code = cli.main(["-url", f"{h2c_server}/cli", "-headers", "X-Name=caf€"], stdout=stdout)

    assert exit_code == 1
    assert stdout.getvalue() == ""
