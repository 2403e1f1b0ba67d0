"""
UDP 中继模块

本模块定义了 SocksPacketConn，在 UDP ASSOCIATE 成功后包装到中继的 UDP 端点，
发送时为每个数据报加上 SOCKS5 UDP 头部，接收时去除头部并还原来源地址。

中继数据报格式:
┌──────────┬─────────┬─────────┬──────────────┬──────────┬──────────┐
│ RSV      │ FRAG    │ ATYP    │ 地址         │ 端口     │ 数据     │
│ 2 字节   │ 1 字节  │ 1 字节  │ 4/1+N/16     │ 2 字节   │ 可变长度 │
└──────────┴─────────┴─────────┴──────────────┴──────────┴──────────┘

控制连接（TCP）必须在关联期间保持打开，关闭它即终止中继。
"""

import asyncio
import ipaddress
import logging
from typing import Optional, Tuple, Union

from socks_protocol import (
    NO_FRAGMENT, RESERVED, SocksAddr, UDPAddr, make_udp_header,
    AddressError, DestinationError, ProtocolError, ShortReplyError, UnsupportedError,
)

from .transport import DatagramConnection, StreamConnection

logger = logging.getLogger('socks-dialer-relay')

RELAY_HEADER_PREFIX_SIZE = 3

Destination = Union[SocksAddr, UDPAddr, str, Tuple[str, int]]


def _to_socks_addr(dest: Destination) -> SocksAddr:
    """将调用方传入的各种目的地址形式转换为 SocksAddr"""
    if isinstance(dest, SocksAddr):
        return dest
    if isinstance(dest, UDPAddr):
        return SocksAddr(dest.ip, dest.port)
    if isinstance(dest, str):
        return SocksAddr.parse(dest)
    if isinstance(dest, tuple) and len(dest) >= 2:
        host, port = dest[0], dest[1]
        if not isinstance(host, str) or not isinstance(port, int) or isinstance(port, bool):
            raise DestinationError(f"invalid destination: {dest!r}", 'relay')
        try:
            host = ipaddress.ip_address(host)
        except ValueError:
            pass
        return SocksAddr(host, port)
    raise DestinationError(f"invalid destination: {dest!r}", 'relay')


class SocksPacketConn:
    """
    SOCKS5 UDP 中继连接

    目的地址策略:
    - 关联时记录了固定目的地址: send_to() 可以省略 dest，显式传入的 dest 必须与之相同
    - 没有固定目的地址: send_to() 必须传入 dest

    Attributes:
        conn: TCP 控制连接
        inner: 到中继的 UDP 端点
        dest: 固定目的地址（可选）
    """

    def __init__(self, conn: StreamConnection, inner: DatagramConnection,
                 dest: Optional[SocksAddr] = None):
        self.conn = conn
        self.inner = inner
        self.dest = dest
        self.watch_task = asyncio.create_task(self._watch_control())

    async def _watch_control(self):
        """
        监视 TCP 控制连接

        代理关闭控制连接（读到 EOF 或读取出错）时关闭 UDP 端点，
        正在等待的 recv_from() 随即抛出 ConnectionResetError。
        控制连接上多余的字节被丢弃。
        """
        try:
            while await self.conn.read(4096):
                pass
        except OSError as e:
            logger.debug(f"读取控制连接出错: {e}")
        logger.debug("控制连接已关闭，关闭 UDP 中继")
        self.inner.close(ConnectionResetError("socks control connection closed"))

    def _check_control(self):
        if self.conn.is_closing() or self.conn.at_eof():
            raise ConnectionResetError("socks control connection closed")

    def _resolve_destination(self, dest: Optional[Destination]) -> SocksAddr:
        if dest is None:
            if self.dest is None:
                raise DestinationError("destination address required", 'relay')
            return self.dest
        target = _to_socks_addr(dest)
        if self.dest is not None and target != self.dest:
            raise DestinationError(
                f"destination {target} does not match associated destination {self.dest}", 'relay'
            )
        return target

    def send_to(self, payload: bytes, dest: Optional[Destination] = None) -> int:
        """
        通过中继发送一个数据报

        Args:
            payload: 数据
            dest: 目的地址，存在固定目的地址时可省略

        Returns:
            int: 发送的数据长度（不含头部）

        Raises:
            DestinationError: 缺少目的地址或与固定目的地址不一致
            ConnectionError: 控制连接或 UDP 端点已关闭
        """
        target = self._resolve_destination(dest)
        self._check_control()
        self.inner.send(make_udp_header(target) + bytes(payload))
        logger.debug(f"发送中继数据报: dest={target}, len={len(payload)}")
        return len(payload)

    def write(self, payload: bytes) -> int:
        """发送到固定目的地址"""
        return self.send_to(payload)

    async def recv_from(self) -> Tuple[bytes, SocksAddr]:
        """
        接收一个中继数据报

        Returns:
            Tuple[bytes, SocksAddr]: (数据, 来源地址)

        Raises:
            ShortReplyError: 数据报过短
            ProtocolError: 保留字段不为 0
            UnsupportedError: 分片号不为 0
            ConnectionError: 控制连接或 UDP 端点已关闭
        """
        self._check_control()
        data = await self.inner.recv()
        payload, source = self.parse_datagram(data)
        logger.debug(f"收到中继数据报: source={source}, len={len(payload)}")
        return payload, source

    async def read(self) -> bytes:
        payload, _ = await self.recv_from()
        return payload

    @staticmethod
    def parse_datagram(data: bytes) -> Tuple[bytes, SocksAddr]:
        """
        解析中继数据报

        Args:
            data: 完整的 UDP 数据报

        Returns:
            Tuple[bytes, SocksAddr]: (数据, 来源地址)
        """
        if len(data) < RELAY_HEADER_PREFIX_SIZE + 1:
            raise ShortReplyError("relay datagram too short", 'relay')
        if data[0] != RESERVED or data[1] != RESERVED:
            raise ProtocolError(
                f"invalid relay datagram reserved bytes: {data[0]} {data[1]}", 'relay'
            )
        if data[2] != NO_FRAGMENT:
            raise UnsupportedError(f"relay datagram fragment not supported: {data[2]}", 'relay')
        try:
            source, payload = SocksAddr.unpack(bytes(data[RELAY_HEADER_PREFIX_SIZE:]))
        except (ShortReplyError, UnsupportedError, AddressError) as e:
            raise type(e)(f"parse relay datagram address failed: {e}", 'relay') from e
        return payload, source

    @property
    def local_addr(self):
        return self.inner.local_addr

    @property
    def remote_addr(self):
        """固定目的地址的网络端点，没有时返回 None"""
        if self.dest is None:
            return None
        return self.dest.net_addr()

    def is_closing(self) -> bool:
        return self.inner.is_closing() or self.conn.is_closing()

    def close(self):
        """同时关闭 UDP 端点和 TCP 控制连接"""
        self.watch_task.cancel()
        self.inner.close()
        self.conn.close()

    async def wait_closed(self):
        await asyncio.gather(self.watch_task, return_exceptions=True)
        await self.conn.wait_closed()

    async def __aenter__(self) -> 'SocksPacketConn':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        await self.wait_closed()
