"""测试共享的桩传输和 UDP 中继服务器"""

import asyncio
import struct

from dialer import BaseDialer, NetDialer


class FakeWriter:
    """内存中的 StreamWriter，记录写入的字节"""

    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data):
        if self.closed:
            raise ConnectionResetError("writer closed")
        self.data += data

    async def drain(self):
        pass

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def get_extra_info(self, name, default=None):
        return default


class StubDialer(BaseDialer):
    """
    内存中的传输桩

    每次 open_connection 返回一个预先填好应答字节的 StreamReader，
    UDP 端点默认通过真实的 NetDialer 在回环地址上打开。
    """

    def __init__(self, reply: bytes = b'', eof: bool = True, datagram=None, fail=None,
                 udp_fail=None, udp_delay: float = 0):
        self.reply = reply
        self.eof = eof
        self.datagram = datagram
        self.fail = fail
        self.udp_fail = udp_fail
        self.udp_delay = udp_delay
        self.tcp_calls = []
        self.udp_calls = []
        self.writers = []
        self.readers = []

    async def open_connection(self, host, port):
        self.tcp_calls.append((host, port))
        if self.fail is not None:
            raise self.fail
        reader = asyncio.StreamReader()
        if self.reply:
            reader.feed_data(self.reply)
        if self.eof:
            reader.feed_eof()
        writer = FakeWriter()
        self.readers.append(reader)
        self.writers.append(writer)
        return reader, writer

    async def open_datagram(self, host, port):
        self.udp_calls.append((host, port))
        if self.udp_delay:
            await asyncio.sleep(self.udp_delay)
        if self.udp_fail is not None:
            raise self.udp_fail
        if self.datagram is not None:
            return self.datagram
        return await NetDialer(timeout=2.0).open_datagram(host, port)


class RelayServer(asyncio.DatagramProtocol):
    """回环地址上的 UDP 中继桩，收到的数据报放入队列"""

    def __init__(self):
        self.transport = None
        self.received = asyncio.Queue()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.received.put_nowait((data, addr))

    @property
    def port(self):
        return self.transport.get_extra_info('sockname')[1]


async def start_relay() -> RelayServer:
    loop = asyncio.get_running_loop()
    _, relay = await loop.create_datagram_endpoint(RelayServer, local_addr=('127.0.0.1', 0))
    return relay


NEGOTIATION_OK = b'\x05\x00'


def ipv4_reply(ip: bytes = b'\x7f\x00\x00\x01', port: int = 0, status: int = 0) -> bytes:
    """命令应答: 05 REP 00 01 ADDR PORT"""
    return bytes([5, status, 0, 1]) + ip + struct.pack('>H', port)
