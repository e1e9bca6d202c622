# tcpscratch

A small user-space TCP responder. It opens a Linux TUN interface, reads raw
IPv4 datagrams from it, and answers TCP connections itself: it completes the
three-way handshake, acknowledges incoming data (and prints it), and takes
part in a passive close.

## Requirements

- Linux with `/dev/net/tun`
- `sudo`, `iptables`, `sysctl` and `ip` available. They are used to bring the
  interface up, give it an address, turn IPv6 off on it, and drop the kernel's
  own handling of incoming SYNs on it.

## Install

```
pip install .
```

## Run

```
tcpscratch
```

Options:

- `--name NAME` — interface name (default `tun0`)
- `--address ADDRESS` — interface address (default `10.0.0.1/24`)

Once it prints `TUN is set up!`, connect to another address on the
interface's network, for example with `nc 10.0.0.2 8080`, and type some lines.
Each received payload is printed as `Received Data: ...` and acknowledged.
Stop with Ctrl-C; the iptables rule is removed on exit. A datagram with a bad
IPv4 or TCP checksum raises `MalformedError` and ends the loop (the rule is
still removed).

## Library use

`tcpscratch.packet` parses and builds IPv4 and TCP headers and computes the
Internet checksum:

```python
from tcpscratch.packet import Connection, Packet, RequestType, Segment, State

conn = Connection(
    state=State.SYN_RCVD,
    source_address=0x0A000002, source_port=40000,
    destination_address=0x0A000001, destination_port=8080,
    send_next=1, recv_next=101,
)
tcp_header = Segment.build(conn, RequestType.SYNACK)   # 20 bytes
datagram = Packet.build(tcp_header, conn)              # 40 bytes, addressed back to the peer
reply = Packet.parse(datagram)
```

Other helpers: `checksum(data, pseudo_header)`, `is_valid_checksum(data,
pseudo_header)`, `classify_flags(flags)` (returns a `RequestType`) and
`protocol_name(value)`. Parse and build failures raise `MalformedError`, a
subclass of `ValueError`.

`tcpscratch.server.TcpServer` holds the connection table in its
`connections` dict. Its `handle_datagram(data)` method takes one raw IPv4
datagram and returns the reply datagram, or `None` when no reply is due, so
the protocol logic can be driven without a TUN device. The module also has
`open_tun(name)`, `configure(name, address)`, `cleanup(name)` and
`serve(tun, server)`, which the command uses.

## What it does not do

- It never sends data of its own and never opens connections; it only
  answers.
- There is no retransmission, no timers, no window handling and no
  out-of-order buffering: a segment whose sequence number is not the expected
  one is ignored.
- IPv4 and TCP options are not decoded, and IPv6 is not handled.
- Closed connections stay in the table; a repeated SYN for the same address
  and port pair gets no reply.

## Tests

```
pip install '.[test]'
pytest
```