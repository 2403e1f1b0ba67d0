"""UDP ASSOCIATE 和中继数据报封装测试（回环 UDP）"""

import asyncio
import socket
from types import SimpleNamespace

import pytest

from conftest import NEGOTIATION_OK, StubDialer, ipv4_reply, start_relay
from dialer import DatagramConnection, SocksDialer, SocksPacketConn
from dialer.transport import DATAGRAM_QUEUE_SIZE
from socks_protocol import (
    AddressError, DestinationError, DialError, ProtocolError, ShortReplyError, SocksAddr,
    UnsupportedError,
)

PROXY = '127.0.0.1:1080'
DNS = '8.8.8.8:53'
DNS_HEADER = b'\x00\x00\x00\x01\x08\x08\x08\x08\x00\x35'


async def associate(target=DNS, bind_ip=b'\x7f\x00\x00\x01'):
    """建立到回环中继的 UDP 关联，返回 (中继桩, 桩传输, SocksPacketConn)"""
    relay = await start_relay()
    stub = StubDialer(NEGOTIATION_OK + ipv4_reply(bind_ip, relay.port), eof=False)
    conn = await SocksDialer(stub, PROXY).dial('udp', target)
    return relay, stub, conn


async def next_datagram(relay):
    return await asyncio.wait_for(relay.received.get(), timeout=2.0)


class TestAssociate:

    @pytest.mark.asyncio
    async def test_associate_request_and_relay_socket(self):
        relay, stub, conn = await associate()
        try:
            assert isinstance(conn, SocksPacketConn)
            assert bytes(stub.writers[0].data) == (
                b'\x05\x01\x00' + b'\x05\x03\x00' + DNS_HEADER[3:]
            )
            assert stub.udp_calls == [('127.0.0.1', relay.port)]
            assert conn.dest == SocksAddr.parse(DNS)
            assert str(conn.remote_addr) == DNS
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_send_and_receive(self):
        relay, stub, conn = await associate()
        try:
            assert conn.send_to(b'ping', DNS) == 4
            data, addr = await next_datagram(relay)
            assert data == DNS_HEADER + b'ping'

            relay.transport.sendto(data, addr)
            payload, source = await asyncio.wait_for(conn.recv_from(), timeout=2.0)
            assert payload == b'ping'
            assert source == SocksAddr.parse(DNS)
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_fixed_destination_write_and_read(self):
        relay, stub, conn = await associate()
        try:
            conn.write(b'query')
            data, addr = await next_datagram(relay)
            assert data == DNS_HEADER + b'query'

            relay.transport.sendto(b'\x00\x00\x00\x03\x0bexample.com\x00\x35answer', addr)
            assert await asyncio.wait_for(conn.read(), timeout=2.0) == b'answer'
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_unspecified_bind_address_uses_proxy_host(self):
        relay, stub, conn = await associate(bind_ip=b'\x00\x00\x00\x00')
        try:
            assert stub.udp_calls == [('127.0.0.1', relay.port)]
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize('target', ['0.0.0.0:0', '0.0.0.0:53', '1.2.3.4:0', '[::]:53'])
    async def test_no_fixed_destination_for_wildcard_target(self, target):
        relay, stub, conn = await associate(target)
        try:
            assert conn.dest is None
            assert conn.remote_addr is None
            with pytest.raises(DestinationError, match='destination address required'):
                conn.write(b'x')
            conn.send_to(b'x', ('example.com', 53))
            data, _ = await next_datagram(relay)
            assert data == b'\x00\x00\x00\x03\x0bexample.com\x00\x35x'
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_not_a_packet_conn(self):
        class NotDatagram:
            closed = False

            def close(self):
                self.closed = True

        handle = NotDatagram()
        stub = StubDialer(NEGOTIATION_OK + ipv4_reply(port=5353), eof=False, datagram=handle)
        with pytest.raises(ProtocolError, match='not a packet conn'):
            await SocksDialer(stub, PROXY).dial('udp', DNS)
        assert handle.closed
        assert stub.writers[0].closed

    @pytest.mark.asyncio
    async def test_not_a_udp_conn(self):
        class StreamSocketTransport:
            closed = False

            def get_extra_info(self, name, default=None):
                if name == 'socket':
                    return SimpleNamespace(type=socket.SOCK_STREAM, family=socket.AF_INET)
                return default

            def is_closing(self):
                return self.closed

            def close(self):
                self.closed = True

        handle = DatagramConnection()
        transport = StreamSocketTransport()
        handle.connection_made(transport)
        stub = StubDialer(NEGOTIATION_OK + ipv4_reply(port=5353), eof=False, datagram=handle)
        with pytest.raises(ProtocolError, match='not a udp conn') as info:
            await SocksDialer(stub, PROXY).dial('udp', DNS)
        assert info.value.stage == 'associate'
        assert transport.closed
        assert stub.writers[0].closed

    @pytest.mark.asyncio
    async def test_relay_open_failure(self):
        stub = StubDialer(NEGOTIATION_OK + ipv4_reply(port=5353), eof=False,
                          udp_fail=ConnectionRefusedError(111, 'refused'))
        with pytest.raises(DialError) as info:
            await SocksDialer(stub, PROXY).dial('udp', DNS)
        assert str(info.value) == 'dial udp relay 127.0.0.1:5353 failed: [Errno 111] refused'
        assert info.value.stage == 'associate'
        assert stub.writers[0].closed

    @pytest.mark.asyncio
    async def test_relay_open_bounded_by_dial_timeout(self):
        stub = StubDialer(NEGOTIATION_OK + ipv4_reply(port=5353), eof=False, udp_delay=1.0)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(DialError, match='dial udp relay 127.0.0.1:5353 failed: timed out') as info:
            await SocksDialer(stub, PROXY).dial('udp', DNS, timeout=0.1)
        assert loop.time() - started < 0.5
        assert info.value.stage == 'associate'
        assert stub.writers[0].closed

    @pytest.mark.asyncio
    async def test_relay_open_bounded_by_handshake_timeout(self):
        stub = StubDialer(NEGOTIATION_OK + ipv4_reply(port=5353), eof=False, udp_delay=1.0)
        socks = SocksDialer(stub, PROXY, handshake_timeout=0.1)
        with pytest.raises(DialError, match='failed: timed out'):
            await socks.dial('udp', DNS)
        assert stub.writers[0].closed


class TestDestinationPolicy:

    @pytest.mark.asyncio
    async def test_matching_explicit_destination_allowed(self):
        relay, stub, conn = await associate()
        try:
            conn.send_to(b'a', SocksAddr.parse(DNS))
            conn.send_to(b'b', ('8.8.8.8', 53))
            assert (await next_datagram(relay))[0] == DNS_HEADER + b'a'
            assert (await next_datagram(relay))[0] == DNS_HEADER + b'b'
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_different_explicit_destination_rejected(self):
        relay, stub, conn = await associate()
        try:
            with pytest.raises(DestinationError, match='does not match'):
                conn.send_to(b'x', '1.1.1.1:53')
            assert relay.received.empty()
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_invalid_destination(self):
        relay, stub, conn = await associate('0.0.0.0:0')
        try:
            with pytest.raises(AddressError):
                conn.send_to(b'x', 'no-port')
            with pytest.raises(DestinationError):
                conn.send_to(b'x', 12345)
            with pytest.raises(DestinationError):
                conn.send_to(b'x', ('8.8.8.8', '53'))
            with pytest.raises(DestinationError):
                conn.send_to(b'x', (None, 53))
            with pytest.raises(AddressError, match='invalid port'):
                conn.send_to(b'x', ('8.8.8.8', 70000))
            assert relay.received.empty()
        finally:
            conn.close()
            relay.transport.close()


class TestParseDatagram:

    def test_ipv6_source(self):
        payload, source = SocksPacketConn.parse_datagram(
            b'\x00\x00\x00\x04' + b'\x00' * 15 + b'\x01' + b'\x00\x35data'
        )
        assert payload == b'data'
        assert source == SocksAddr.parse('[::1]:53')

    def test_empty_payload(self):
        payload, source = SocksPacketConn.parse_datagram(DNS_HEADER)
        assert payload == b''
        assert source == SocksAddr.parse(DNS)

    def test_too_short(self):
        with pytest.raises(ShortReplyError):
            SocksPacketConn.parse_datagram(b'\x00\x00\x00')

    def test_truncated_address(self):
        with pytest.raises(ShortReplyError, match='relay datagram') as info:
            SocksPacketConn.parse_datagram(b'\x00\x00\x00\x01\x08\x08')
        assert info.value.stage == 'relay'

    def test_reserved_bytes(self):
        with pytest.raises(ProtocolError):
            SocksPacketConn.parse_datagram(b'\x00\x01' + DNS_HEADER[2:])

    def test_fragment_unsupported(self):
        with pytest.raises(UnsupportedError, match='fragment'):
            SocksPacketConn.parse_datagram(b'\x00\x00\x01' + DNS_HEADER[3:])

    def test_zero_length_fqdn(self):
        with pytest.raises(AddressError):
            SocksPacketConn.parse_datagram(b'\x00\x00\x00\x03\x00\x00\x35')

    @pytest.mark.asyncio
    async def test_bad_datagram_surfaces_on_receive(self):
        relay, stub, conn = await associate()
        try:
            conn.write(b'ping')
            _, addr = await next_datagram(relay)
            relay.transport.sendto(b'\x00\x00\x02' + DNS_HEADER[3:] + b'frag', addr)
            with pytest.raises(UnsupportedError):
                await asyncio.wait_for(conn.recv_from(), timeout=2.0)
        finally:
            conn.close()
            relay.transport.close()


class TestClose:

    @pytest.mark.asyncio
    async def test_close_closes_both(self):
        relay, stub, conn = await associate()
        try:
            inner = conn.inner
            assert isinstance(inner, DatagramConnection)
            async with conn:
                pass
            assert stub.writers[0].closed
            assert inner.is_closing()
            assert conn.is_closing()
            with pytest.raises(ConnectionError):
                conn.write(b'x')
        finally:
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_control_closed_externally(self):
        relay, stub, conn = await associate()
        try:
            stub.writers[0].close()
            with pytest.raises(ConnectionResetError):
                conn.write(b'x')
            with pytest.raises(ConnectionResetError):
                await conn.recv_from()
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_control_eof_from_proxy(self):
        relay, stub, conn = await associate()
        try:
            stub.readers[0].feed_eof()
            with pytest.raises(ConnectionResetError):
                conn.write(b'x')
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_pending_receive_fails_when_proxy_closes_control(self):
        relay, stub, conn = await associate()
        try:
            pending = asyncio.ensure_future(conn.recv_from())
            await asyncio.sleep(0.01)
            assert not pending.done()
            stub.readers[0].feed_eof()
            with pytest.raises(ConnectionResetError, match='control connection closed'):
                await asyncio.wait_for(pending, timeout=2.0)
            assert conn.inner.is_closing()
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_extra_control_bytes_keep_relay_open(self):
        relay, stub, conn = await associate()
        try:
            stub.readers[0].feed_data(b'junk')
            await asyncio.sleep(0.01)
            assert not conn.is_closing()
            conn.write(b'ping')
            assert (await next_datagram(relay))[0] == DNS_HEADER + b'ping'
        finally:
            conn.close()
            relay.transport.close()

    @pytest.mark.asyncio
    async def test_receive_after_udp_closed(self):
        relay, stub, conn = await associate()
        try:
            conn.inner.close()
            with pytest.raises(ConnectionError):
                await asyncio.wait_for(conn.inner.recv(), timeout=2.0)
            with pytest.raises(ConnectionError):
                await asyncio.wait_for(conn.inner.recv(), timeout=2.0)
        finally:
            conn.close()
            relay.transport.close()


class TestDatagramQueue:

    @pytest.mark.asyncio
    async def test_default_queue_is_bounded(self):
        assert DATAGRAM_QUEUE_SIZE > 0
        assert DatagramConnection()._queue.maxsize == DATAGRAM_QUEUE_SIZE

    @pytest.mark.asyncio
    async def test_full_queue_drops_new_datagrams(self):
        endpoint = DatagramConnection(queue_size=4)
        for i in range(10):
            endpoint.datagram_received(bytes([i]), ('127.0.0.1', 9))
        assert endpoint._queue.qsize() == 4
        assert endpoint.dropped == 6
        assert [await endpoint.recv() for _ in range(4)] == [b'\x00', b'\x01', b'\x02', b'\x03']

    @pytest.mark.asyncio
    async def test_errors_and_close_survive_full_queue(self):
        endpoint = DatagramConnection(queue_size=2)
        endpoint.datagram_received(b'a', None)
        endpoint.datagram_received(b'b', None)
        endpoint.error_received(ConnectionRefusedError(111, 'refused'))
        endpoint.connection_lost(None)
        with pytest.raises(ConnectionRefusedError):
            await endpoint.recv()
        for _ in range(2):
            with pytest.raises(ConnectionError, match='use of closed network connection'):
                await endpoint.recv()

    @pytest.mark.asyncio
    async def test_flood_from_relay_stays_bounded(self):
        relay, stub, conn = await associate()
        try:
            conn.write(b'ping')
            _, addr = await next_datagram(relay)
            for _ in range(DATAGRAM_QUEUE_SIZE * 2):
                relay.transport.sendto(DNS_HEADER + b'flood', addr)
            await asyncio.sleep(0.2)
            assert conn.inner._queue.qsize() <= DATAGRAM_QUEUE_SIZE
            assert await asyncio.wait_for(conn.read(), timeout=2.0) == b'flood'
        finally:
            conn.close()
            relay.transport.close()
