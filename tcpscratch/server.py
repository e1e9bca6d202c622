"""A minimal TCP responder that talks to the kernel through a TUN device."""

from __future__ import annotations

import argparse
import struct
import subprocess
from typing import BinaryIO, Optional

from .packet import (
    TCP_PROTOCOL_NUMBER,
    Connection,
    MalformedError,
    Packet,
    Protocol,
    RequestType,
    Segment,
    State,
    classify_flags,
)

TUN_DEVICE = "/dev/net/tun"
TUNSETIFF = 0x400454CA
IFF_TUN = 0x0001
IFF_NO_PI = 0x1000

DEFAULT_INTERFACE = "tun0"
DEFAULT_ADDRESS = "10.0.0.1/24"
READ_SIZE = 2000

_IPTABLES_RULE = [
    "-i",
    "{name}",
    "-p",
    "tcp",
    "--tcp-flags",
    "SYN,RST,ACK,FIN",
    "SYN",
    "-j",
    "DROP",
]

ConnectionKey = tuple[int, int, int, int]


def _connection_key(packet: Packet, segment: Segment) -> ConnectionKey:
    return (
        packet.source_address,
        segment.source_port,
        packet.destination_address,
        segment.destination_port,
    )


def _reply(connection: Connection, request_type: RequestType) -> Optional[bytes]:
    """Build a full IPv4 reply, or report the failure and return None."""
    try:
        tcp_header = Segment.build(connection, request_type)
    except MalformedError:
        print("Checksum calc is not done correctly for segment")
        return None
    try:
        return Packet.build(tcp_header, connection)
    except MalformedError:
        print("Checksum calc is not done correctly for packet")
        return None


class TcpServer:
    """Tracks connections and produces replies to incoming IPv4 datagrams."""

    def __init__(self) -> None:
        self.connections: dict[ConnectionKey, Connection] = {}

    def handle_datagram(self, data: bytes) -> Optional[bytes]:
        """Process one IPv4 datagram and return the reply to send, if any."""
        packet = Packet.parse(data)
        if packet.protocol != Protocol.TCP:
            return None

        ip_header_length = packet.ihl * 4
        segment_length = (packet.total_length - ip_header_length) & 0xFFFF
        pseudo_header = (
            (packet.source_address >> 16) & 0xFFFF,
            packet.source_address & 0xFFFF,
            (packet.destination_address >> 16) & 0xFFFF,
            packet.destination_address & 0xFFFF,
            TCP_PROTOCOL_NUMBER,
            segment_length,
        )
        segment = Segment.parse(data[ip_header_length:], pseudo_header)

        request_type = classify_flags(segment.flags)
        if request_type is RequestType.SYN:
            return self.handle_syn(packet, segment)
        if request_type is RequestType.ACK:
            return self.handle_ack(packet, segment)
        if request_type is RequestType.PSHACK:
            return self.handle_pshack(packet, segment, data)
        if request_type is RequestType.FIN:
            return self.handle_fin(packet, segment)
        if request_type is RequestType.FINACK:
            return self.handle_finack(packet, segment)

        if request_type is RequestType.UNKNOWN:
            print(f"Unknown({segment.flags})")
        else:
            print(request_type.value)
        return None

    def handle_syn(self, packet: Packet, segment: Segment) -> Optional[bytes]:
        """Open a connection in SYN_RCVD and answer with SYN-ACK."""
        key = _connection_key(packet, segment)
        if key in self.connections:
            return None

        initial_sequence = 0
        connection = Connection(
            state=State.SYN_RCVD,
            source_address=packet.source_address,
            source_port=segment.source_port,
            destination_address=packet.destination_address,
            destination_port=segment.destination_port,
            send_next=initial_sequence + 1,
            recv_next=(segment.sequence_number + 1) & 0xFFFFFFFF,
        )
        reply = _reply(connection, RequestType.SYNACK)
        if reply is None:
            return None
        self.connections[key] = connection
        return reply

    def handle_ack(self, packet: Packet, segment: Segment) -> Optional[bytes]:
        """Advance the connection state on a bare ACK; never replies."""
        connection = self.connections.get(_connection_key(packet, segment))
        if connection is None:
            return None

        if connection.state is State.SYN_RCVD:
            if segment.acknowledgement_number == connection.send_next:
                print("Connection ESTABLISHED!")
                connection.send_next = (connection.send_next + 1) & 0xFFFFFFFF
                connection.state = State.ESTABLISHED
            else:
                print("Received ACK with wrong number for a connection in SYN_RCVD.")
        elif connection.state is State.ESTABLISHED:
            print("Established connection is sending an ack")
        elif connection.state is State.LAST_ACK:
            print("Last , goodbye my friend")
            connection.state = State.CLOSED
            print(connection)
        return None

    def handle_pshack(
        self, packet: Packet, segment: Segment, data: bytes
    ) -> Optional[bytes]:
        """Accept in-order data on an established connection and acknowledge it."""
        connection = self.connections.get(_connection_key(packet, segment))
        if connection is None or connection.state is not State.ESTABLISHED:
            return None
        if segment.sequence_number != connection.recv_next:
            return None

        header_length = packet.ihl * 4 + segment.data_offset * 4
        data_length = packet.total_length - header_length
        if data_length < 0:
            raise MalformedError("Header lengths exceed total length")
        if data_length > 0:
            payload = bytes(data[header_length : header_length + data_length])
            print(f"Received Data: {payload.decode('utf-8', errors='replace')}")

        connection.recv_next = (connection.recv_next + data_length) & 0xFFFFFFFF
        return _reply(connection, RequestType.ACK)

    def handle_fin(self, packet: Packet, segment: Segment) -> Optional[bytes]:
        """Acknowledge a peer's FIN and move to CLOSE_WAIT."""
        connection = self.connections.get(_connection_key(packet, segment))
        if connection is None or connection.state is not State.ESTABLISHED:
            return None

        print("Requested a closure")
        if segment.sequence_number != connection.recv_next:
            return None
        print("Matched")
        reply = _reply(connection, RequestType.ACK)
        if reply is None:
            return None
        connection.state = State.CLOSE_WAIT
        return reply

    def handle_finack(self, packet: Packet, segment: Segment) -> Optional[bytes]:
        """Answer a peer's FIN-ACK with our own FIN-ACK and move to LAST_ACK."""
        connection = self.connections.get(_connection_key(packet, segment))
        if connection is None or connection.state is not State.ESTABLISHED:
            return None

        print("Requested a closure")
        if segment.sequence_number != connection.recv_next:
            return None
        print("Matched")
        connection.recv_next = (connection.recv_next + 1) & 0xFFFFFFFF
        reply = _reply(connection, RequestType.FINACK)
        if reply is None:
            return None
        connection.state = State.LAST_ACK
        return reply


def open_tun(name: str) -> BinaryIO:
    """Open the TUN clone device and attach it to the named interface."""
    import fcntl

    tun = open(TUN_DEVICE, "r+b", buffering=0)
    request = struct.pack("16sH22x", name.encode(), IFF_TUN | IFF_NO_PI)
    try:
        fcntl.ioctl(tun, TUNSETIFF, request)
    except OSError:
        tun.close()
        raise
    return tun


def _iptables_rule(name: str) -> list[str]:
    return [part.format(name=name) for part in _IPTABLES_RULE]


def configure(name: str, address: str) -> None:
    """Bring the interface up with an address and keep the kernel's own TCP off it."""
    subprocess.run(
        ["sudo", "iptables", "-I", "INPUT", "1", *_iptables_rule(name)],
        check=False,
    )
    subprocess.run(
        ["sudo", "sysctl", "-w", f"net.ipv6.conf.{name}.disable_ipv6=1"],
        stdout=subprocess.DEVNULL,
        check=False,
    )
    subprocess.run(["sudo", "ip", "link", "set", "dev", name, "up"], check=False)
    subprocess.run(["sudo", "ip", "addr", "add", address, "dev", name], check=False)
    print("TUN is set up!")


def cleanup(name: str) -> None:
    """Remove the firewall rule added by configure."""
    subprocess.run(
        ["sudo", "iptables", "-D", "INPUT", *_iptables_rule(name)],
        check=False,
    )
    print("TUN is cleaned up!")


def serve(tun: BinaryIO, server: TcpServer) -> None:
    """Read datagrams from the device and write replies until EOF or Ctrl-C."""
    while True:
        try:
            data = tun.read(READ_SIZE)
        except KeyboardInterrupt:
            return
        if not data:
            print("EOF reached!")
            return
        reply = server.handle_datagram(data)
        if reply is not None:
            tun.write(reply)


def main(argv: Optional[list[str]] = None) -> int:
    """Set up the TUN interface, serve connections, then clean up."""
    parser = argparse.ArgumentParser(description="Answer TCP on a TUN interface.")
    parser.add_argument("--name", default=DEFAULT_INTERFACE, help="interface name")
    parser.add_argument("--address", default=DEFAULT_ADDRESS, help="interface address")
    args = parser.parse_args(argv)

    with open_tun(args.name) as tun:
        configure(args.name, args.address)
        try:
            serve(tun, TcpServer())
        finally:
            cleanup(args.name)
    return 0