# rrdnsgw

Building blocks for a small DNS server. The server answers over UDP and
forwards what it cannot answer itself to upstream resolvers. The package
depends on nothing beyond the Python standard library.

## Modules

### `rrdnsgw.messages`

This module holds the domain objects.

- `RRType`, `RRClass` and `RCode` are integer enums of the record types,
  classes and response codes the package knows.
- `Question(id, name, type, class_)` holds a question and the message ID
  it came in.
- `ResourceRecord` holds a resource record.
  - `ResourceRecord.authoritative(...)` builds a record whose TTL never
    counts down.
  - `ResourceRecord.cached(..., now)` builds a record that expires `ttl`
    seconds after `now`.
  - Both check the type, the class and the TTL range, and raise
    `ValueError` if one is wrong.
  - `ttl_remaining(now)` gives the seconds left, never fewer than zero.
- `DNSResponse` holds the ID, rcode, question and the `answers`,
  `authority` and `additional` lists.
- `DNSCodec` is the abstract interface a codec fulfils. Its methods are
  `encode_query`, `decode_response`, `decode_query` and `encode_response`.

### `rrdnsgw.wire`

This module reads and writes the RFC 1035 wire format.

- `UDPCodec(logger)` implements `DNSCodec`. When `logger` is `None`, it
  uses a module logger.
  - `encode_query` writes a standard query with RD set.
  - `decode_query` accepts a message with exactly one question.
  - `encode_response` writes a response with the flags `0x8180` and the
    question section. Each answer whose name equals the first answer's name
    is written as a pointer to the question name.
  - `decode_response` checks the message ID, takes the rcode from the
    flags, skips the questions, and parses the answer, authority and
    additional sections into cached records.
  - Record data is turned into text for A, AAAA, NS, CNAME, PTR, MX, SOA
    and TXT records. Other known types become hex.
- `decode_name(data, offset)`, `decode_question(data, offset)` and
  `encode_domain_name(name)` handle names. They follow compression
  pointers when decoding.
- Malformed or oversized input raises `WireError`, a subclass of
  `ValueError`.

### `rrdnsgw.upstream`

`Resolver(servers, codec, timeout, parallel, dial)` forwards a question to
upstream `host:port` servers.

- In serial mode it tries each server in turn.
- In parallel mode it queries them all at once and takes the first
  success.
- `resolve(query, now, timeout)` returns the answer records. The `timeout`
  argument overrides the resolver's default for one call.
- A timeout that is missing or not positive becomes five seconds.
- When every server fails or the deadline passes, it raises
  `UpstreamError`. An empty server list or a missing codec also raises
  `UpstreamError`.
- `dial(address, timeout)` may be replaced with a callable that returns
  anything with `settimeout`, `send`, `recv` and `close`. The default opens
  a connected UDP socket.

### `rrdnsgw.transport`

This module serves queries over a UDP socket.

- `UDPTransport(addr, codec, logger)` serves DNS over UDP.
  - `start(handler)` binds the socket and listens in a background thread.
  - Each packet is decoded and passed to `handler.handle_query(query,
    client)`. The returned `DNSResponse` is encoded and sent back.
    Failures at any step are logged and the packet is dropped.
  - `stop()` closes the socket. Calling it twice is harmless.
  - `address()` returns the configured address.
  - `running` and `bound_address` report the transport's state.
  - Starting it twice, or failing to resolve or bind the address, raises
    `TransportError`.
- `TransportType` lists `UDP`, `DOH`, `DOT` and `DOQ`.
- `new_transport(transport_type, addr, codec, logger)` builds a transport
  by type. Only UDP can be built. The other types, and unknown ones, raise
  `TransportError`.
- `supported_transports()` returns a fresh list of the types that work.
- `is_transport_supported(transport_type)` checks a single type.

## Example

```python
import logging

from rrdnsgw.messages import DNSResponse
from rrdnsgw.transport import TransportType, new_transport
from rrdnsgw.wire import UDPCodec


class EmptyAnswers:
    def handle_query(self, query, client):
        return DNSResponse(id=query.id, question=query)


logger = logging.getLogger("rrdnsgw")
codec = UDPCodec(logger)
server = new_transport(TransportType.UDP, "127.0.0.1:5353", codec, logger)
print(server.address())   # 127.0.0.1:5353

server.start(EmptyAnswers())
...
server.stop()
```

Forwarding to upstream servers:

```python
from datetime import datetime, timezone

from rrdnsgw.messages import Question, RRType
from rrdnsgw.upstream import Resolver

resolver = Resolver(["1.1.1.1:53", "8.8.8.8:53"], codec, 2.0, True, None)
question = Question(id=4242, name="example.com.", type=RRType.A)
answers = resolver.resolve(question, datetime.now(timezone.utc), None)
```

## What it does not do

- There is no command-line program and no ready-made server. You supply
  the handler that decides how a query is answered.
- It has no record cache, no zone storage and no configuration loading.
- DNS over HTTPS, TLS and QUIC are named but cannot be created.
- It has no TCP fallback and no EDNS. Messages are limited to 512 bytes
  on both the server and the upstream side.
- A response cannot hold more than 65535 answers, and a record's data
  cannot exceed 65535 bytes.

## Running the tests

```
pip install -e ".[test]"
pytest
```