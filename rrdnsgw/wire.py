"""Encoding and decoding of DNS messages in the RFC 1035 wire format."""

from __future__ import annotations

import ipaddress
import logging
import struct
from datetime import datetime

from rrdnsgw.messages import (
    DNSCodec,
    DNSResponse,
    Question,
    RCode,
    ResourceRecord,
    RRType,
)

_HEADER = struct.Struct(">HHHHHH")
_TYPE_CLASS = struct.Struct(">HH")
_RR_FIXED = struct.Struct(">HHIH")
_SOA_FIXED = struct.Struct(">IIIII")

_QUERY_FLAGS = 0x0100  # standard query, RD=1
_RESPONSE_FLAGS = 0x8180  # standard response, RA=1
_QNAME_OFFSET = 12  # the question name always follows the header
_MAX_LABEL = 63
_MAX_COUNT = 0xFFFF
_MAX_POINTER_DEPTH = 64


class WireError(ValueError):
    """Raised when a DNS message cannot be encoded or decoded."""


def _label_bytes(label: str) -> bytes:
    return label.encode("utf-8", "surrogateescape")


def _label_text(raw: bytes) -> str:
    return bytes(raw).decode("utf-8", "surrogateescape")


def decode_name(data: bytes, offset: int) -> tuple[str, int]:
    """Decode a possibly compressed name; return it and the offset after it."""
    return _decode_name(data, offset, 0)


def _decode_name(data: bytes, offset: int, depth: int) -> tuple[str, int]:
    labels: list[str] = []
    while True:
        if not 0 <= offset < len(data):
            raise WireError("offset out of bounds")
        length = data[offset]
        if length == 0:
            offset += 1
            break
        if length & 0xC0 == 0xC0:
            if offset + 1 >= len(data):
                raise WireError("compression pointer out of bounds")
            if depth >= _MAX_POINTER_DEPTH:
                raise WireError("too many compression pointers")
            pointer = int.from_bytes(data[offset : offset + 2], "big") & 0x3FFF
            suffix, _ = _decode_name(data, pointer, depth + 1)
            labels.append(suffix)
            offset += 2
            break
        offset += 1
        if offset + length > len(data):
            raise WireError("label length out of bounds")
        labels.append(_label_text(data[offset : offset + length]))
        offset += length
    return ".".join(labels), offset


def decode_question(data: bytes, offset: int) -> tuple[str, int, int, int]:
    """Parse a question; return name, type, class and the offset after it."""
    name, offset = decode_name(data, offset)
    if offset + 4 > len(data):
        raise WireError("truncated question fields")
    qtype, qclass = _TYPE_CLASS.unpack_from(data, offset)
    return name, qtype, qclass, offset + 4


def encode_domain_name(name: str) -> bytes:
    """Encode a name without compression; every dot-separated label is written."""
    if not name:
        return b"\x00"
    out = bytearray()
    for label in name.split("."):
        raw = _label_bytes(label)
        if len(raw) > _MAX_LABEL:
            raise WireError(f"label too long: {label}")
        out.append(len(raw))
        out += raw
    out.append(0)
    return bytes(out)


def _rdata_text(rrtype: int, message: bytes, start: int, end: int) -> str:
    rdata = bytes(message[start:end])
    if rrtype == RRType.A:
        if len(rdata) != 4:
            raise WireError(f"A record data must be 4 bytes, got {len(rdata)}")
        return str(ipaddress.IPv4Address(rdata))
    if rrtype == RRType.AAAA:
        if len(rdata) != 16:
            raise WireError(f"AAAA record data must be 16 bytes, got {len(rdata)}")
        return str(ipaddress.IPv6Address(rdata))
    if rrtype in (RRType.NS, RRType.CNAME, RRType.PTR):
        name, _ = decode_name(message, start)
        return name
    if rrtype == RRType.MX:
        if len(rdata) < 3:
            raise WireError("MX record data too short")
        preference = int.from_bytes(rdata[:2], "big")
        exchange, _ = decode_name(message, start + 2)
        return f"{preference} {exchange}"
    if rrtype == RRType.SOA:
        mname, offset = decode_name(message, start)
        rname, offset = decode_name(message, offset)
        if offset + _SOA_FIXED.size > end:
            raise WireError("SOA record data too short")
        numbers = _SOA_FIXED.unpack_from(message, offset)
        return " ".join([mname, rname, *map(str, numbers)])
    if rrtype == RRType.TXT:
        strings = []
        offset = 0
        while offset < len(rdata):
            length = rdata[offset]
            offset += 1
            if offset + length > len(rdata):
                raise WireError("TXT string out of bounds")
            strings.append(f'"{_label_text(rdata[offset:offset + length])}"')
            offset += length
        return " ".join(strings)
    return rdata.hex()


class UDPCodec(DNSCodec):
    """Codec for standard DNS messages carried over UDP."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def _debug(self, msg: str, **fields: object) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug("%s %s", msg, fields)

    def encode_query(self, query: Question) -> bytes:
        """Serialise a question as a recursive standard query."""
        out = bytearray(_HEADER.pack(query.id, _QUERY_FLAGS, 1, 0, 0, 0))
        name = query.name[:-1] if query.name.endswith(".") else query.name
        for label in name.split("."):
            raw = _label_bytes(label)
            if len(raw) > _MAX_LABEL:
                raise WireError(f"label too long: {label}")
            if raw:
                out.append(len(raw))
                out += raw
        out.append(0)
        out += _TYPE_CLASS.pack(query.type, query.class_)
        return bytes(out)

    def decode_query(self, data: bytes) -> Question:
        """Parse a client query holding exactly one question."""
        if len(data) < 12:
            raise WireError("query too short")
        msg_id, _flags, qd_count, *_ = _HEADER.unpack_from(data, 0)
        if qd_count != 1:
            raise WireError("expected exactly one question")
        name, qtype, qclass, _ = decode_question(data, 12)
        return Question(id=msg_id, name=name, type=qtype, class_=qclass)

    def encode_response(self, resp: DNSResponse) -> bytes:
        """Serialise a response; answers owned by the first answer's name point at the question."""
        answer_count = len(resp.answers)
        if answer_count > _MAX_COUNT:
            raise WireError(
                f"too many answer records: {answer_count} (max {_MAX_COUNT})"
            )
        out = bytearray(_HEADER.pack(resp.id, _RESPONSE_FLAGS, 1, answer_count, 0, 0))
        self._debug("Wrote DNS response header", id=resp.id, qd=1, an=answer_count)

        out += encode_domain_name(resp.question.name)
        out += _TYPE_CLASS.pack(resp.question.type, resp.question.class_)
        self._debug(
            "Wrote question section",
            name=resp.question.name,
            type=resp.question.type,
            **{"class": resp.question.class_},
        )

        pointer = bytes([0xC0 | (_QNAME_OFFSET >> 8), _QNAME_OFFSET & 0xFF])
        for rr in resp.answers:
            if rr.name == resp.answers[0].name:
                out += pointer
            else:
                out += encode_domain_name(rr.name)
            data_len = len(rr.data)
            if data_len > _MAX_COUNT:
                raise WireError(
                    f"resource record data too large: {data_len} bytes (max {_MAX_COUNT})"
                )
            ttl = rr.ttl_remaining() & 0xFFFFFFFF
            out += _RR_FIXED.pack(rr.type, rr.class_, ttl, data_len)
            out += rr.data
            self._debug(
                "Wrote answer record",
                name=rr.name,
                type=rr.type,
                ttl=ttl,
                dlen=data_len,
                **{"class": rr.class_},
            )

        self._debug("Final encoded DNS response", size=len(out), raw=out.hex())
        return bytes(out)

    def decode_response(
        self, data: bytes, expected_id: int, now: datetime
    ) -> DNSResponse:
        """Parse an upstream response, checking that its ID matches."""
        if len(data) < 12:
            raise WireError("response too short")
        msg_id, flags, qd_count, an_count, ns_count, ar_count = _HEADER.unpack_from(data, 0)
        if msg_id != expected_id:
            raise WireError(f"ID mismatch: expected {expected_id}, got {msg_id}")
        code = flags & 0x000F
        rcode = RCode(code) if code in RCode._value2member_map_ else code

        offset = 12
        for _ in range(qd_count):
            while True:
                if offset >= len(data):
                    raise WireError("truncated question name")
                length = data[offset]
                offset += 1
                if length == 0:
                    break
                offset += length
            offset += 4  # QTYPE + QCLASS

        sections: dict[str, list[ResourceRecord]] = {}
        for section, count in (
            ("answer", an_count),
            ("authority", ns_count),
            ("additional", ar_count),
        ):
            records = []
            for index in range(count):
                try:
                    rr, offset = self._parse_resource_record(data, offset, now)
                except WireError as exc:
                    raise WireError(
                        f"failed to parse {section} record {index}: {exc}"
                    ) from exc
                records.append(rr)
            sections[section] = records

        return DNSResponse(
            id=msg_id,
            rcode=rcode,
            answers=sections["answer"],
            authority=sections["authority"],
            additional=sections["additional"],
        )

    def _parse_resource_record(
        self, data: bytes, offset: int, now: datetime
    ) -> tuple[ResourceRecord, int]:
        if offset + 10 > len(data):
            raise WireError("truncated record section")
        try:
            name, offset = decode_name(data, offset)
        except WireError as exc:
            raise WireError(f"failed to decode record name: {exc}") from exc
        if offset + 10 > len(data):
            raise WireError("truncated record section after name")
        rrtype, rrclass, ttl, rd_len = _RR_FIXED.unpack_from(data, offset)
        offset += _RR_FIXED.size
        end = offset + rd_len
        if end > len(data):
            raise WireError("truncated rdata")
        try:
            text = _rdata_text(rrtype, data, offset, end)
        except WireError as exc:
            raise WireError(f"failed to decode rdata: {exc}") from exc
        try:
            rr = ResourceRecord.cached(
                name, rrtype, rrclass, ttl, bytes(data[offset:end]), text, now
            )
        except ValueError as exc:
            raise WireError(f"invalid resource record: {exc}") from exc
        return rr, end