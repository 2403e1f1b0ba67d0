"""
传输层模块

本模块提供基于 asyncio 的默认传输实现：
- NetDialer: 带超时、网卡绑定和源地址绑定策略的 TCP/UDP 拨号器
- StreamConnection: TCP 流连接（CONNECT 成功后直接返回给调用方，也作为 UDP 关联的控制连接）
- DatagramConnection: 基于 DatagramProtocol 的已连接 UDP 端点
"""

import asyncio
import logging
import socket
from typing import Optional, Tuple

from socks_protocol import MAX_DATAGRAM_SIZE

from .base import BaseDialer

logger = logging.getLogger('socks-dialer-transport')

# 每个 UDP 端点最多缓存的未读数据报数量，超出时丢弃新到达的数据报
DATAGRAM_QUEUE_SIZE = 1024


class StreamConnection:
    """
    TCP 流连接

    对 StreamReader/StreamWriter 的薄封装，读写的字节不做任何额外处理。

    Attributes:
        reader: 异步流读取器
        writer: 异步流写入器
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    async def read(self, n: int = -1) -> bytes:
        return await self.reader.read(n)

    async def readexactly(self, n: int) -> bytes:
        return await self.reader.readexactly(n)

    async def write(self, data: bytes):
        """写入数据并等待缓冲区排空"""
        self.writer.write(data)
        await self.writer.drain()

    def at_eof(self) -> bool:
        return self.reader.at_eof()

    def is_closing(self) -> bool:
        return self.writer.is_closing()

    def get_extra_info(self, name: str, default=None):
        return self.writer.get_extra_info(name, default)

    @property
    def local_addr(self):
        return self.get_extra_info('sockname')

    @property
    def remote_addr(self):
        return self.get_extra_info('peername')

    def close(self):
        if not self.writer.is_closing():
            self.writer.close()

    async def wait_closed(self):
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"等待连接关闭时出错: {e}")

    async def __aenter__(self) -> 'StreamConnection':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        await self.wait_closed()


class DatagramConnection(asyncio.DatagramProtocol):
    """
    已连接的 UDP 端点

    每个收到的数据报作为独立的 bytes 放入有界队列，多个接收方不会共享缓冲区。
    队列已满时新到达的数据报被丢弃（UDP 本身不保证送达），
    错误和关闭通知则挤掉最旧的数据报，保证一定能被接收方看到。
    连接关闭后，send/recv 均抛出 ConnectionError。

    Attributes:
        transport: asyncio 数据报传输对象
        dropped: 因队列已满而丢弃的数据报数量
    """

    def __init__(self, queue_size: int = DATAGRAM_QUEUE_SIZE):
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed_exc: Optional[Exception] = None
        self._close_reason: Optional[Exception] = None

    def _put_notice(self, exc: Exception):
        while True:
            try:
                self._queue.put_nowait(exc)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1

    # ------------------------------------------------------------------
    # DatagramProtocol 回调
    # ------------------------------------------------------------------

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"接收队列已满，丢弃数据报: len={len(data)}, dropped={self.dropped}")

    def error_received(self, exc):
        logger.debug(f"UDP 错误: {exc}")
        self._put_notice(exc)

    def connection_lost(self, exc):
        self._closed_exc = exc or self._close_reason or ConnectionError("use of closed network connection")
        self._put_notice(self._closed_exc)

    # ------------------------------------------------------------------
    # 读写接口
    # ------------------------------------------------------------------

    def send(self, data: bytes):
        """
        发送一个数据报

        Raises:
            ConnectionError: 端点已关闭
            ValueError: 数据报超过 65535 字节
        """
        if self.transport is None or self.transport.is_closing():
            raise ConnectionError("use of closed network connection")
        if len(data) > MAX_DATAGRAM_SIZE:
            raise ValueError(f"datagram too large: {len(data)} bytes")
        self.transport.sendto(data)

    async def recv(self) -> bytes:
        """
        接收一个数据报

        Returns:
            bytes: 数据报内容

        Raises:
            ConnectionError: 端点已关闭
            OSError: 之前发送的数据报触发的 ICMP 错误
        """
        item = await self._queue.get()
        if isinstance(item, Exception):
            if item is self._closed_exc:
                # 关闭状态需要被后续每次 recv 看到
                self._queue.put_nowait(item)
            raise item
        return item

    def is_closing(self) -> bool:
        return self.transport is None or self.transport.is_closing()

    def get_extra_info(self, name: str, default=None):
        if self.transport is None:
            return default
        return self.transport.get_extra_info(name, default)

    @property
    def local_addr(self):
        return self.get_extra_info('sockname')

    @property
    def remote_addr(self):
        return self.get_extra_info('peername')

    def close(self, reason: Optional[Exception] = None):
        """
        关闭端点

        Args:
            reason: 之后 recv 抛出的异常，默认为 ConnectionError
        """
        if self.transport is not None and not self.transport.is_closing():
            self._close_reason = reason
            self.transport.close()


class NetDialer(BaseDialer):
    """
    默认的 asyncio 拨号器

    Attributes:
        timeout: 连接超时（秒），None 表示不限制
        interface: 绑定的网卡名（Linux SO_BINDTODEVICE），None 表示不绑定
        local_address: 源地址 (host, port)，None 表示由系统选择
    """

    def __init__(self, timeout: Optional[float] = 5.0, interface: Optional[str] = None,
                 local_address: Optional[Tuple[str, int]] = None):
        self.timeout = timeout
        self.interface = interface
        self.local_address = local_address

    def _bind(self, sock: socket.socket):
        if self.interface:
            opt = getattr(socket, 'SO_BINDTODEVICE', None)
            if opt is None:
                raise OSError("binding to an interface is not supported on this platform")
            sock.setsockopt(socket.SOL_SOCKET, opt, self.interface.encode())
        if self.local_address:
            sock.bind(self.local_address)

    async def _create_socket(self, host: str, port: int, sock_type: int) -> socket.socket:
        """
        解析地址并创建已绑定、已连接的 socket

        按 getaddrinfo 的顺序依次尝试，全部失败时抛出最后一个错误。
        """
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(host, port, type=sock_type)
        if not infos:
            raise OSError(f"getaddrinfo returned no results for {host}")

        last_exc = None
        for family, type_, proto, _, sockaddr in infos:
            sock = socket.socket(family, type_, proto)
            try:
                sock.setblocking(False)
                self._bind(sock)
                if sock_type == socket.SOCK_STREAM:
                    await loop.sock_connect(sock, sockaddr)
                else:
                    sock.connect(sockaddr)
                return sock
            except OSError as e:
                sock.close()
                last_exc = e
            except asyncio.CancelledError:
                sock.close()
                raise
        raise last_exc

    async def _open_connection(self, host: str, port: int):
        if self.interface:
            sock = await self._create_socket(host, port, socket.SOCK_STREAM)
            return await asyncio.open_connection(sock=sock)
        return await asyncio.open_connection(host, port, local_addr=self.local_address)

    async def _open_datagram(self, host: str, port: int) -> DatagramConnection:
        loop = asyncio.get_running_loop()
        if self.interface:
            sock = await self._create_socket(host, port, socket.SOCK_DGRAM)
            _, protocol = await loop.create_datagram_endpoint(DatagramConnection, sock=sock)
        else:
            _, protocol = await loop.create_datagram_endpoint(
                DatagramConnection,
                remote_addr=(host, port),
                local_addr=self.local_address,
            )
        return protocol

    async def open_connection(self, host: str, port: int):
        logger.debug(f"打开 TCP 连接: {host}:{port}")
        return await asyncio.wait_for(self._open_connection(host, port), timeout=self.timeout)

    async def open_datagram(self, host: str, port: int) -> DatagramConnection:
        logger.debug(f"打开 UDP 端点: {host}:{port}")
        return await asyncio.wait_for(self._open_datagram(host, port), timeout=self.timeout)
