"""IPv4 packet and TCP segment parsing, building and checksums."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Iterable, Sequence

FIN_FLAG = 0b0000_0001
SYN_FLAG = 0b0000_0010
RST_FLAG = 0b0000_0100
PSH_FLAG = 0b0000_1000
ACK_FLAG = 0b0001_0000
URG_FLAG = 0b0010_0000
ECE_FLAG = 0b0100_0000
CWR_FLAG = 0b1000_0000

IP_HEADER_LEN = 20
TCP_HEADER_LEN = 20
TCP_PROTOCOL_NUMBER = 6
DEFAULT_WINDOW = 65535
DEFAULT_TTL = 64

_IP_HEADER = struct.Struct("!BBHHHBBH4s4s")
_TCP_HEADER = struct.Struct("!HHIIBBHHH")


class MalformedError(ValueError):
    """Raised when a packet or segment cannot be parsed or built."""


class Protocol(enum.IntEnum):
    """IP protocol numbers the stack knows by name."""

    ICMP = 1
    IGMP = 2
    TCP = 6
    UDP = 17
    ENCAP = 41
    OSPF = 89
    SCTP = 132


def protocol_name(value: int) -> str:
    """Return the display name of an IP protocol number."""
    try:
        return Protocol(value).name
    except ValueError:
        return f"Unknown({value})"


def _to_protocol(value: int) -> Protocol | int:
    try:
        return Protocol(value)
    except ValueError:
        return value


class State(enum.Enum):
    """States of a server-side TCP connection."""

    LISTEN = "Listen"
    SYN_RCVD = "SynRcvd"
    ESTABLISHED = "Established"
    CLOSE_WAIT = "CloseWait"
    LAST_ACK = "LastAck"
    CLOSED = "Closed"

    def __str__(self) -> str:
        return self.value


class RequestType(enum.Enum):
    """Kinds of TCP segment, as told by their flags."""

    SYN = "SYN"
    ACK = "ACK"
    PSHACK = "PSHACK"
    FIN = "FIN"
    SYNACK = "SYNACK"
    RST = "RST"
    FINACK = "FINACK"
    UNKNOWN = "Unknown"


@dataclass
class Connection:
    """A connection as seen from the peer that opened it."""

    state: State
    source_address: int
    source_port: int
    destination_address: int
    destination_port: int
    send_next: int
    recv_next: int


def _ones_complement_sum(data: bytes, pseudo_header: Iterable[int]) -> int:
    total = sum(pseudo_header)
    if len(data) % 2:
        data = bytes(data) + b"\x00"
    total += sum(word for (word,) in struct.iter_unpack("!H", data))
    while total >> 16:
        total = (total >> 16) + (total & 0xFFFF)
    return total


def checksum(data: bytes, pseudo_header: Sequence[int] = ()) -> int:
    """Compute the Internet checksum of data plus the pseudo-header words."""
    return ~_ones_complement_sum(data, pseudo_header) & 0xFFFF


def is_valid_checksum(data: bytes, pseudo_header: Sequence[int] = ()) -> bool:
    """Tell whether data, with its checksum field filled in, sums correctly."""
    return _ones_complement_sum(data, pseudo_header) == 0xFFFF


def classify_flags(flags: int) -> RequestType:
    """Map the TCP flags byte to the kind of segment it denotes."""
    if flags == SYN_FLAG:
        return RequestType.SYN
    if flags == ACK_FLAG:
        return RequestType.ACK
    if flags == PSH_FLAG | ACK_FLAG:
        return RequestType.PSHACK
    if flags == FIN_FLAG:
        return RequestType.FIN
    if flags == FIN_FLAG | ACK_FLAG:
        return RequestType.FINACK
    if flags & RST_FLAG:
        return RequestType.RST
    return RequestType.UNKNOWN


def _split_address(address: int) -> tuple[int, int]:
    return (address >> 16) & 0xFFFF, address & 0xFFFF


@dataclass(frozen=True)
class Packet:
    """The fixed part of an IPv4 header."""

    version: int
    ihl: int
    dscp: int
    ecn: int
    total_length: int
    identification: int
    flags: int
    fragment_offset: int
    ttl: int
    protocol: Protocol | int
    header_checksum: int
    source_address: int
    destination_address: int
    options: None = None

    @classmethod
    def parse(cls, data: bytes) -> Packet:
        """Parse and checksum-verify an IPv4 header at the start of data."""
        if len(data) < IP_HEADER_LEN:
            raise MalformedError("Packet too short for IPv4 header")
        ihl = data[0] & 0x0F
        header_length = ihl * 4
        if header_length > len(data):
            raise MalformedError("Packet shorter than its header length")
        if not is_valid_checksum(bytes(data[:header_length])):
            raise MalformedError("Packet Checksum Invalid")

        (
            version_ihl,
            dscp_ecn,
            total_length,
            identification,
            flags_fragment,
            ttl,
            protocol,
            header_checksum,
            source,
            destination,
        ) = _IP_HEADER.unpack_from(data)

        return cls(
            version=version_ihl >> 4,
            ihl=ihl,
            dscp=dscp_ecn >> 2,
            ecn=dscp_ecn & 0x03,
            total_length=total_length,
            identification=identification,
            flags=flags_fragment >> 13,
            fragment_offset=flags_fragment & 0x1FFF,
            ttl=ttl,
            protocol=_to_protocol(protocol),
            header_checksum=header_checksum,
            source_address=int.from_bytes(source, "big"),
            destination_address=int.from_bytes(destination, "big"),
        )

    @classmethod
    def build(cls, tcp_header: bytes, connection: Connection) -> bytes:
        """Wrap a TCP header in an IPv4 header addressed back to the peer."""
        if len(tcp_header) != TCP_HEADER_LEN:
            raise MalformedError("TCP header must be 20 bytes")
        header = bytearray(
            _IP_HEADER.pack(
                (4 << 4) | 5,
                0,
                IP_HEADER_LEN + TCP_HEADER_LEN,
                0,
                2 << 13,
                DEFAULT_TTL,
                TCP_PROTOCOL_NUMBER,
                0,
                connection.destination_address.to_bytes(4, "big"),
                connection.source_address.to_bytes(4, "big"),
            )
        )
        header[10:12] = checksum(bytes(header)).to_bytes(2, "big")
        return bytes(header) + bytes(tcp_header)


@dataclass(frozen=True)
class Segment:
    """The fixed part of a TCP header."""

    source_port: int
    destination_port: int
    sequence_number: int
    acknowledgement_number: int
    data_offset: int
    flags: int
    window: int
    checksum: int
    urgent_pointer: int
    options: None = None

    @classmethod
    def parse(cls, data: bytes, pseudo_header: Sequence[int]) -> Segment:
        """Parse and checksum-verify a TCP segment."""
        if len(data) < TCP_HEADER_LEN:
            raise MalformedError("Segment too short for TCP header")
        if not is_valid_checksum(bytes(data), pseudo_header):
            raise MalformedError("Segment Checksum Invalid")

        (
            source_port,
            destination_port,
            sequence_number,
            acknowledgement_number,
            offset_byte,
            flags,
            window,
            segment_checksum,
            urgent_pointer,
        ) = _TCP_HEADER.unpack_from(data)

        return cls(
            source_port=source_port,
            destination_port=destination_port,
            sequence_number=sequence_number,
            acknowledgement_number=acknowledgement_number,
            data_offset=offset_byte >> 4,
            flags=flags,
            window=window,
            checksum=segment_checksum,
            urgent_pointer=urgent_pointer,
        )

    @classmethod
    def build(cls, connection: Connection, request_type: RequestType) -> bytes:
        """Build a 20-byte TCP reply header for the connection."""
        flag_map = {
            RequestType.ACK: ACK_FLAG,
            RequestType.SYNACK: SYN_FLAG | ACK_FLAG,
            RequestType.FINACK: FIN_FLAG | ACK_FLAG,
        }
        try:
            flags = flag_map[request_type]
        except KeyError:
            raise MalformedError("Wrong request type") from None

        header = bytearray(
            _TCP_HEADER.pack(
                connection.destination_port,
                connection.source_port,
                (connection.send_next - 1) & 0xFFFFFFFF,
                connection.recv_next & 0xFFFFFFFF,
                5 << 4,
                flags,
                DEFAULT_WINDOW,
                0,
                0,
            )
        )
        pseudo_header = (
            *_split_address(connection.destination_address),
            *_split_address(connection.source_address),
            TCP_PROTOCOL_NUMBER,
            TCP_HEADER_LEN,
        )
        header[16:18] = checksum(bytes(header), pseudo_header).to_bytes(2, "big")
        return bytes(header)