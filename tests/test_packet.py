import pytest

from tcpscratch.packet import (
    ACK_FLAG,
    FIN_FLAG,
    PSH_FLAG,
    RST_FLAG,
    SYN_FLAG,
    Connection,
    MalformedError,
    Packet,
    Protocol,
    RequestType,
    Segment,
    State,
    checksum,
    classify_flags,
    is_valid_checksum,
    protocol_name,
)

# A widely published IPv4 header example whose checksum field is 0xb861.
SAMPLE_IP_HEADER = bytes.fromhex("450000730000400040 11b861c0a80001c0a800c7".replace(" ", ""))

PEER = 0x0A000002
LOCAL = 0x0A000001


def make_connection(**overrides):
    fields = dict(
        state=State.SYN_RCVD,
        source_address=PEER,
        source_port=40000,
        destination_address=LOCAL,
        destination_port=8080,
        send_next=1,
        recv_next=1001,
    )
    fields.update(overrides)
    return Connection(**fields)


def reply_pseudo_header(connection):
    return [
        connection.destination_address >> 16,
        connection.destination_address & 0xFFFF,
        connection.source_address >> 16,
        connection.source_address & 0xFFFF,
        6,
        20,
    ]


def test_protocol_name_known_and_unknown():
    assert protocol_name(6) == "TCP"
    assert protocol_name(17) == "UDP"
    assert protocol_name(200) == "Unknown(200)"


def test_state_display():
    connection = make_connection()
    assert str(connection.state) == "SynRcvd"
    established = make_connection(state=State.ESTABLISHED)
    assert str(established.state) == "Established"


@pytest.mark.parametrize(
    "flags, expected",
    [
        (SYN_FLAG, RequestType.SYN),
        (ACK_FLAG, RequestType.ACK),
        (PSH_FLAG | ACK_FLAG, RequestType.PSHACK),
        (FIN_FLAG, RequestType.FIN),
        (FIN_FLAG | ACK_FLAG, RequestType.FINACK),
        (RST_FLAG, RequestType.RST),
        (RST_FLAG | ACK_FLAG, RequestType.RST),
        (SYN_FLAG | ACK_FLAG, RequestType.UNKNOWN),
        (0, RequestType.UNKNOWN),
    ],
)
def test_classify_flags(flags, expected):
    assert classify_flags(flags) is expected


def test_sample_header_checksum_is_valid():
    assert is_valid_checksum(SAMPLE_IP_HEADER)
    zeroed = SAMPLE_IP_HEADER[:10] + b"\x00\x00" + SAMPLE_IP_HEADER[12:]
    assert checksum(zeroed) == int.from_bytes(SAMPLE_IP_HEADER[10:12], "big")


def test_checksum_detects_corruption():
    corrupted = bytearray(SAMPLE_IP_HEADER)
    corrupted[8] ^= 0x01
    assert not is_valid_checksum(bytes(corrupted))


def test_checksum_odd_length_pads_with_zero():
    data = b"\x12\x34\x56"
    assert checksum(data) == checksum(data + b"\x00")


def test_packet_parse_sample():
    packet = Packet.parse(SAMPLE_IP_HEADER)
    assert packet.version == 4
    assert packet.ihl == 5
    assert packet.total_length == 0x73
    assert packet.ttl == 0x40
    assert packet.protocol is Protocol.UDP
    assert packet.flags == 2
    assert packet.fragment_offset == 0
    assert packet.source_address == 0xC0A80001
    assert packet.destination_address == 0xC0A800C7
    assert packet.options is None


def test_packet_parse_unknown_protocol_kept_as_number():
    header = bytearray(SAMPLE_IP_HEADER)
    header[9] = 200
    header[10:12] = b"\x00\x00"
    header[10:12] = checksum(bytes(header)).to_bytes(2, "big")
    packet = Packet.parse(bytes(header))
    assert packet.protocol == 200
    assert not isinstance(packet.protocol, Protocol)


def test_packet_parse_too_short():
    with pytest.raises(MalformedError, match="too short"):
        Packet.parse(SAMPLE_IP_HEADER[:19])


def test_packet_parse_bad_checksum():
    corrupted = bytearray(SAMPLE_IP_HEADER)
    corrupted[11] ^= 0xFF
    with pytest.raises(MalformedError, match="Checksum"):
        Packet.parse(bytes(corrupted))


def test_segment_build_synack_round_trip():
    connection = make_connection()
    header = Segment.build(connection, RequestType.SYNACK)
    assert len(header) == 20
    segment = Segment.parse(header, reply_pseudo_header(connection))
    assert segment.source_port == connection.destination_port
    assert segment.destination_port == connection.source_port
    assert segment.sequence_number == connection.send_next - 1
    assert segment.acknowledgement_number == connection.recv_next
    assert segment.data_offset == 5
    assert segment.flags == SYN_FLAG | ACK_FLAG
    assert segment.window == 65535
    assert segment.urgent_pointer == 0


@pytest.mark.parametrize(
    "request_type, flags",
    [
        (RequestType.ACK, ACK_FLAG),
        (RequestType.FINACK, FIN_FLAG | ACK_FLAG),
    ],
)
def test_segment_build_flags(request_type, flags):
    connection = make_connection(send_next=5, recv_next=77)
    segment = Segment.parse(
        Segment.build(connection, request_type), reply_pseudo_header(connection)
    )
    assert segment.flags == flags
    assert classify_flags(segment.flags) is request_type


@pytest.mark.parametrize("request_type", [RequestType.SYN, RequestType.RST, RequestType.FIN])
def test_segment_build_rejects_other_types(request_type):
    with pytest.raises(MalformedError, match="Wrong request type"):
        Segment.build(make_connection(), request_type)


def test_segment_parse_too_short():
    with pytest.raises(MalformedError, match="too short"):
        Segment.parse(b"\x00" * 19, [0] * 6)


def test_segment_parse_wrong_pseudo_header():
    connection = make_connection()
    header = Segment.build(connection, RequestType.ACK)
    wrong = reply_pseudo_header(connection)
    wrong[-1] += 1
    with pytest.raises(MalformedError, match="Checksum"):
        Segment.parse(header, wrong)


def test_packet_build_round_trip():
    connection = make_connection()
    tcp_header = Segment.build(connection, RequestType.SYNACK)
    datagram = Packet.build(tcp_header, connection)
    assert len(datagram) == 40
    assert datagram[20:] == tcp_header

    packet = Packet.parse(datagram)
    assert packet.version == 4
    assert packet.ihl == 5
    assert packet.total_length == 40
    assert packet.ttl == 64
    assert packet.flags == 2
    assert packet.protocol is Protocol.TCP
    assert packet.source_address == connection.destination_address
    assert packet.destination_address == connection.source_address


def test_packet_build_header_bytes():
    datagram = Packet.build(Segment.build(make_connection(), RequestType.ACK), make_connection())
    assert datagram[0] == 0x45
    assert datagram[2:4] == (40).to_bytes(2, "big")
    assert datagram[8] == 64
    assert datagram[9] == 6
    assert is_valid_checksum(datagram[:20])


def test_packet_build_rejects_wrong_tcp_length():
    with pytest.raises(MalformedError):
        Packet.build(b"\x00" * 10, make_connection())