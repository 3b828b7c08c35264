"""DNS message model shared by codecs, resolvers and transports."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta

MAX_TTL = 0xFFFFFFFF


class RRType(enum.IntEnum):
    """Resource record types understood by this package."""

    A = 1
    NS = 2
    CNAME = 5
    SOA = 6
    PTR = 12
    MX = 15
    TXT = 16
    AAAA = 28
    SRV = 33
    OPT = 41
    CAA = 257


class RRClass(enum.IntEnum):
    """Resource record classes understood by this package."""

    IN = 1
    CH = 3
    HS = 4
    NONE = 254
    ANY = 255


class RCode(enum.IntEnum):
    """DNS response codes carried in the low four bits of the flags."""

    NOERROR = 0
    FORMERR = 1
    SERVFAIL = 2
    NXDOMAIN = 3
    NOTIMP = 4
    REFUSED = 5


def _validate_record(rrtype: int, rrclass: int, ttl: int) -> None:
    if rrtype not in RRType._value2member_map_:
        raise ValueError(f"unsupported record type {rrtype}")
    if rrclass not in RRClass._value2member_map_:
        raise ValueError(f"unsupported record class {rrclass}")
    if not 0 <= ttl <= MAX_TTL:
        raise ValueError(f"ttl out of range: {ttl}")


@dataclass(frozen=True)
class Question:
    """A single DNS question together with the message ID it arrived in."""

    id: int
    name: str
    type: int
    class_: int = RRClass.IN


@dataclass(frozen=True)
class ResourceRecord:
    """A resource record; cached records carry an expiry time."""

    name: str
    type: int
    class_: int = RRClass.IN
    ttl: int = 0
    data: bytes = b""
    text: str = ""
    expires_at: datetime | None = None

    @classmethod
    def authoritative(
        cls, name: str, rrtype: int, rrclass: int, ttl: int, data: bytes, text: str
    ) -> ResourceRecord:
        """Build a validated record whose TTL never counts down."""
        _validate_record(rrtype, rrclass, ttl)
        return cls(name, rrtype, rrclass, ttl, bytes(data), text)

    @classmethod
    def cached(
        cls,
        name: str,
        rrtype: int,
        rrclass: int,
        ttl: int,
        data: bytes,
        text: str,
        now: datetime,
    ) -> ResourceRecord:
        """Build a validated record that expires ``ttl`` seconds after ``now``."""
        _validate_record(rrtype, rrclass, ttl)
        return cls(
            name, rrtype, rrclass, ttl, bytes(data), text, now + timedelta(seconds=ttl)
        )

    def ttl_remaining(self, now: datetime | None = None) -> int:
        """Seconds left before the record expires, never below zero."""
        if self.expires_at is None:
            return self.ttl
        if now is None:
            now = datetime.now(self.expires_at.tzinfo)
        remaining = (self.expires_at - now).total_seconds()
        return max(0, int(remaining))


def _empty_question() -> Question:
    return Question(id=0, name="", type=0, class_=0)


@dataclass
class DNSResponse:
    """A DNS response with its answer, authority and additional sections."""

    id: int
    rcode: int = RCode.NOERROR
    question: Question = field(default_factory=_empty_question)
    answers: list[ResourceRecord] = field(default_factory=list)
    authority: list[ResourceRecord] = field(default_factory=list)
    additional: list[ResourceRecord] = field(default_factory=list)


class DNSCodec(abc.ABC):
    """Converts between DNS wire format and message objects."""

    @abc.abstractmethod
    def encode_query(self, query: Question) -> bytes:
        """Serialise a question for sending to an upstream server."""

    @abc.abstractmethod
    def decode_response(
        self, data: bytes, expected_id: int, now: datetime
    ) -> DNSResponse:
        """Parse an upstream response, checking its ID."""

    @abc.abstractmethod
    def decode_query(self, data: bytes) -> Question:
        """Parse a query received from a client."""

    @abc.abstractmethod
    def encode_response(self, resp: DNSResponse) -> bytes:
        """Serialise a response for sending to a client."""