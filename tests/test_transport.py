import logging
import socket
import threading
import time

import pytest

from rrdnsgw.messages import DNSCodec, DNSResponse, Question, ResourceRecord
from rrdnsgw.transport import (
    TransportError,
    TransportType,
    UDPTransport,
    is_transport_supported,
    new_transport,
    supported_transports,
)

LOGGER_NAME = "rrdnsgw.transport"
QUERY_DATA = bytes([0x01, 0x02, 0x03])
RESPONSE_DATA = bytes([0x04, 0x05, 0x06])
TEST_QUERY = Question(id=12345, name="example.com.", type=1)


class FakeCodec(DNSCodec):
    def __init__(self, question=TEST_QUERY, payload=RESPONSE_DATA,
                 decode_error=None, encode_error=None):
        self.question = question
        self.payload = payload
        self.decode_error = decode_error
        self.encode_error = encode_error
        self.decoded = []
        self.encoded = []

    def encode_query(self, query):
        return b""

    def decode_response(self, data, expected_id, now):
        return DNSResponse(id=expected_id)

    def decode_query(self, data):
        self.decoded.append(bytes(data))
        if self.decode_error is not None:
            raise self.decode_error
        return self.question

    def encode_response(self, resp):
        self.encoded.append(resp)
        if self.encode_error is not None:
            raise self.encode_error
        return self.payload


class FakeResponder:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []
        self._lock = threading.Lock()

    def handle_query(self, query, client):
        with self._lock:
            self.calls.append((query, client))
        if self.error is not None:
            raise self.error
        return self.response


def _response():
    return DNSResponse(
        id=12345,
        rcode=0,
        answers=[ResourceRecord(name="example.com.", type=1, class_=1, data=b"1.2.3.4")],
    )


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _records(caplog, message, level):
    return [r for r in caplog.records if r.getMessage() == message and r.levelno == level]


@pytest.fixture
def client():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2.0)
    yield sock
    sock.close()


def _started(codec, handler):
    transport = UDPTransport("127.0.0.1:0", codec, logging.getLogger(LOGGER_NAME))
    transport.start(handler)
    return transport


# factory


def test_new_transport_udp_success():
    transport = new_transport(TransportType.UDP, "127.0.0.1:0", FakeCodec(), None)
    assert isinstance(transport, UDPTransport)
    assert transport.address() == "127.0.0.1:0"


@pytest.mark.parametrize(
    "kind, addr, message",
    [
        (TransportType.DOH, "127.0.0.1:443", "DNS over HTTPS transport not yet implemented"),
        (TransportType.DOT, "127.0.0.1:853", "DNS over TLS transport not yet implemented"),
        (TransportType.DOQ, "127.0.0.1:853", "DNS over QUIC transport not yet implemented"),
        ("unknown", "127.0.0.1:53", "unsupported transport type: unknown"),
    ],
)
def test_new_transport_errors(kind, addr, message):
    with pytest.raises(TransportError, match=message):
        new_transport(kind, addr, FakeCodec(), None)


def test_new_transport_accepts_plain_string():
    transport = new_transport("udp", "127.0.0.1:5053", FakeCodec(), None)
    assert transport.address() == "127.0.0.1:5053"


def test_supported_transports_contains_udp_and_is_fresh():
    supported = supported_transports()
    assert TransportType.UDP in supported
    first = supported_transports()
    second = supported_transports()
    first[0] = "modified"
    assert second[0] == TransportType.UDP


@pytest.mark.parametrize(
    "kind, expected",
    [
        (TransportType.UDP, True),
        (TransportType.DOH, False),
        (TransportType.DOT, False),
        (TransportType.DOQ, False),
        ("unknown", False),
        ("", False),
        ("udp", True),
    ],
)
def test_is_transport_supported(kind, expected):
    assert is_transport_supported(kind) is expected


def test_transport_type_formats_as_value():
    assert f"{TransportType.DOH}" == "doh"
    assert TransportType("dot") is TransportType.DOT


# UDP transport


def test_new_udp_transport_initial_state():
    transport = UDPTransport("127.0.0.1:5053", FakeCodec(), None)
    assert transport.address() == "127.0.0.1:5053"
    assert transport.running is False
    assert transport.bound_address is None


def test_start_stop_cycle():
    transport = _started(FakeCodec(), FakeResponder(_response()))
    try:
        assert transport.running is True
        assert transport.bound_address[1] > 0
        with pytest.raises(TransportError, match="already running"):
            transport.start(FakeResponder(_response()))
    finally:
        transport.stop()
    assert transport.running is False
    transport.stop()
    assert transport.running is False


def test_start_invalid_address():
    transport = UDPTransport("invalid-address", FakeCodec(), None)
    with pytest.raises(TransportError, match="failed to resolve UDP address"):
        transport.start(FakeResponder())
    assert transport.running is False


def test_start_bind_failure():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("127.0.0.1", 0))
    try:
        port = blocker.getsockname()[1]
        transport = UDPTransport(f"127.0.0.1:{port}", FakeCodec(), None)
        with pytest.raises(TransportError, match="failed to bind UDP socket"):
            transport.start(FakeResponder())
        assert transport.running is False
    finally:
        blocker.close()


def test_restart_after_stop():
    transport = _started(FakeCodec(), FakeResponder(_response()))
    transport.stop()
    transport.start(FakeResponder(_response()))
    try:
        assert transport.running is True
    finally:
        transport.stop()


def test_query_handling_round_trip(client):
    codec = FakeCodec()
    handler = FakeResponder(_response())
    transport = _started(codec, handler)
    try:
        client.sendto(QUERY_DATA, transport.bound_address)
        data, _ = client.recvfrom(512)
    finally:
        transport.stop()
    assert data == RESPONSE_DATA
    assert codec.decoded == [QUERY_DATA]
    assert codec.encoded == [_response()]
    assert handler.calls[0][0] == TEST_QUERY
    assert handler.calls[0][1][1] == client.getsockname()[1]


def test_decode_error_is_logged(client, caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    codec = FakeCodec(decode_error=ValueError("bad packet"))
    handler = FakeResponder(_response())
    transport = _started(codec, handler)
    try:
        client.sendto(b"\xff\xff\xff", transport.bound_address)
        assert _wait_for(
            lambda: _records(caplog, "Failed to decode DNS query", logging.WARNING)
        )
    finally:
        transport.stop()
    record = _records(caplog, "Failed to decode DNS query", logging.WARNING)[0]
    assert record.fields["error"] == "bad packet"
    assert record.fields["size"] == 3
    assert handler.calls == []


def test_encode_error_is_logged(client, caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    codec = FakeCodec(encode_error=ValueError("cannot encode"))
    handler = FakeResponder(DNSResponse(id=12345, rcode=0))
    transport = _started(codec, handler)
    try:
        client.sendto(QUERY_DATA, transport.bound_address)
        assert _wait_for(
            lambda: _records(caplog, "Failed to encode DNS response", logging.ERROR)
        )
    finally:
        transport.stop()
    record = _records(caplog, "Failed to encode DNS response", logging.ERROR)[0]
    assert record.fields["query_id"] == 12345
    assert record.fields["error"] == "cannot encode"
    assert len(handler.calls) == 1


def test_handler_error_is_logged(client, caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    codec = FakeCodec()
    handler = FakeResponder(error=RuntimeError("resolver down"))
    transport = _started(codec, handler)
    try:
        client.sendto(QUERY_DATA, transport.bound_address)
        assert _wait_for(
            lambda: _records(caplog, "Failed to handle DNS query", logging.ERROR)
        )
    finally:
        transport.stop()
    record = _records(caplog, "Failed to handle DNS query", logging.ERROR)[0]
    assert record.fields["query_id"] == 12345
    assert record.fields["error"] == "resolver down"
    assert codec.encoded == []


def test_start_and_stop_are_logged(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    transport = _started(FakeCodec(), FakeResponder(_response()))
    transport.stop()
    started = _records(caplog, "DNS transport started", logging.INFO)
    stopped = _records(caplog, "DNS transport stopped", logging.INFO)
    assert len(started) == 1
    assert len(stopped) == 1
    assert stopped[0].fields == {"transport": "udp", "address": "127.0.0.1:0"}


def test_concurrent_requests():
    codec = FakeCodec()
    handler = FakeResponder(DNSResponse(id=12345, rcode=0))
    transport = _started(codec, handler)
    results = []
    lock = threading.Lock()
    target = transport.bound_address

    def send_one():
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout(2.0)
        try:
            sock.sendto(QUERY_DATA, target)
            data, _ = sock.recvfrom(512)
        except OSError as exc:
            data = repr(exc)
        finally:
            sock.close()
        with lock:
            results.append(data)

    threads = [threading.Thread(target=send_one) for _ in range(10)]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
    finally:
        transport.stop()
    assert results == [RESPONSE_DATA] * 10
    assert len(handler.calls) == 10


def test_no_responses_after_stop(client):
    transport = _started(FakeCodec(), FakeResponder(_response()))
    target = transport.bound_address
    transport.stop()
    client.settimeout(0.3)
    client.sendto(QUERY_DATA, target)
    with pytest.raises(OSError):
        client.recvfrom(512)