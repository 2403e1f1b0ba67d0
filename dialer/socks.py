"""
SOCKS5 会话协商模块

本模块定义了 SOCKS5 拨号器，负责与代理服务器建立 TCP 连接，
执行方法协商，发送 CONNECT / UDP ASSOCIATE 请求并解析绑定地址。

握手流程:
1. 建立到代理服务器的 TCP 连接
2. 方法协商: 发送 05 01 00，读取 VER METHOD
3. 发送命令请求: 05 CMD 00 ATYP ADDR PORT
4. 读取应答头: VER REP RSV ATYP
5. 按 ATYP 读取绑定地址和端口
6. TCP: 直接返回连接；UDP: 打开到中继地址的 UDP 端点并包装为 SocksPacketConn

每一步都是写入后等待依赖的读取，握手本身没有并发。
"""

import asyncio
import logging
import socket
from typing import Optional

from socks_protocol import (
    VERSION5, RESERVED, AddrType, Command, SocksAddr,
    address_body_length, reply_status_message,
    make_negotiation_request, make_command_request,
    SocksError, DialError, ShortReplyError, VersionError, ReplyError,
    ProtocolError, UnsupportedError, AddressError,
)

from .base import BaseDialer
from .packet_conn import SocksPacketConn
from .transport import DatagramConnection, NetDialer, StreamConnection

logger = logging.getLogger('socks-dialer')

SUPPORTED_NETWORKS = ('tcp', 'udp')


class _Handshake:
    """
    单次拨号的握手状态

    保存控制连接和截止时间，把每一次读写的超时/短读/传输错误转换为带阶段标签的错误。
    """

    def __init__(self, conn: StreamConnection, deadline: Optional[float],
                 step_timeout: Optional[float]):
        self.conn = conn
        self.deadline = deadline
        self.step_timeout = step_timeout

    def _timeout(self) -> Optional[float]:
        timeouts = []
        if self.step_timeout is not None:
            timeouts.append(self.step_timeout)
        if self.deadline is not None:
            timeouts.append(max(0.0, self.deadline - asyncio.get_running_loop().time()))
        return min(timeouts) if timeouts else None

    async def write(self, data: bytes, what: str, stage: str):
        try:
            await asyncio.wait_for(self.conn.write(data), timeout=self._timeout())
        except asyncio.TimeoutError as e:
            raise DialError(f"send {what} failed: timed out", stage) from e
        except OSError as e:
            raise DialError(f"send {what} failed: {e}", stage) from e

    async def read_exact(self, n: int, failure: str, too_short: str, stage: str) -> bytes:
        try:
            return await asyncio.wait_for(self.conn.readexactly(n), timeout=self._timeout())
        except asyncio.IncompleteReadError as e:
            raise ShortReplyError(too_short, stage) from e
        except asyncio.TimeoutError as e:
            raise DialError(f"{failure}: timed out", stage) from e
        except OSError as e:
            raise DialError(f"{failure}: {e}", stage) from e


class SocksDialer:
    """
    SOCKS5 拨号器

    一个实例对应一个代理服务器，可以被多个并发的 dial() 调用共享，
    实例本身不保存任何跨调用的可变状态。

    Attributes:
        dialer: 传输能力（打开 TCP/UDP 连接）
        addr: 代理服务器地址
        handshake_timeout: 握手中每次读写的超时（秒），None 表示不限制
    """

    def __init__(self, dialer: BaseDialer, addr: str, handshake_timeout: Optional[float] = None):
        self.dialer = dialer
        self.addr = SocksAddr.parse(addr)
        self.handshake_timeout = handshake_timeout

    @classmethod
    def from_config(cls, config) -> 'SocksDialer':
        """
        从 DialerConfig 创建拨号器

        Args:
            config: DialerConfig 配置对象

        Returns:
            SocksDialer: 使用 NetDialer 作为传输的拨号器
        """
        net = NetDialer(
            timeout=config.timeout,
            interface=config.interface,
            local_address=config.local_address,
        )
        return cls(net, config.proxy, handshake_timeout=config.handshake_timeout)

    async def dial(self, network: str, address: str, timeout: Optional[float] = None):
        """
        通过代理建立到目标地址的连接

        Args:
            network: "tcp" 或 "udp"
            address: 目标地址 "host:port"
            timeout: 整个拨号（连接 + 握手）的超时（秒），None 表示不限制

        Returns:
            tcp 返回 StreamConnection，udp 返回 SocksPacketConn

        Raises:
            UnsupportedError: 不支持的网络类型，在任何 I/O 之前抛出
            SocksError: 握手任一阶段失败
        """
        if network not in SUPPORTED_NETWORKS:
            raise UnsupportedError(f"unsupported network type: {network}")

        try:
            target = SocksAddr.parse(address)
        except AddressError as e:
            raise AddressError(f"parse socks addr failed: {e}", 'request') from e

        deadline = None
        if timeout is not None:
            deadline = asyncio.get_running_loop().time() + timeout

        conn = await self._connect(deadline)
        try:
            return await self._negotiate(conn, network, target, deadline)
        except SocksError as e:
            logger.warning(f"SOCKS5 握手失败: proxy={self.addr}, target={target}, error={e}")
            conn.close()
            raise
        except BaseException:
            conn.close()
            raise

    async def _connect(self, deadline: Optional[float]) -> StreamConnection:
        """
        建立到代理服务器的 TCP 连接

        Raises:
            DialError: 连接失败或超时
        """
        host, port = self.addr.to_tuple()
        timeout = None
        if deadline is not None:
            timeout = max(0.0, deadline - asyncio.get_running_loop().time())

        logger.debug(f"连接代理服务器: {self.addr}")
        try:
            reader, writer = await asyncio.wait_for(
                self.dialer.open_connection(host, port), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise DialError("dial failed: timed out", 'dial') from e
        except OSError as e:
            raise DialError(f"dial failed: {e}", 'dial') from e
        return StreamConnection(reader, writer)

    async def _negotiate(self, conn: StreamConnection, network: str, target: SocksAddr,
                         deadline: Optional[float]):
        session = _Handshake(conn, deadline, self.handshake_timeout)

        # 方法协商
        await session.write(make_negotiation_request(), 'negotiation request', 'negotiation')
        nego = await session.read_exact(
            2, 'receive negotiation response failed',
            'negotiation response too short', 'negotiation'
        )
        if nego[0] != VERSION5:
            raise VersionError(
                f"unsupported negotiation response version: {nego[0]}", nego[0], 'negotiation'
            )
        logger.debug(f"方法协商完成: method={nego[1]}")

        if network == 'tcp':
            stage, cmd = 'connect', Command.CONNECT
        else:
            stage, cmd = 'associate', Command.ASSOCIATE

        # 命令请求
        await session.write(make_command_request(cmd, target), f'{stage} request', stage)
        bind_addr = await self._read_reply(session, stage)
        logger.debug(f"{stage} 成功: bind={bind_addr}")

        if network == 'tcp':
            logger.info(f"已连接: {target} via {self.addr}")
            return conn
        return await self._open_relay(session, target, bind_addr)

    async def _read_reply(self, session: _Handshake, stage: str) -> SocksAddr:
        """
        读取命令应答并解析绑定地址

        Returns:
            SocksAddr: 绑定地址
        """
        header = await session.read_exact(
            4, f'receive {stage} response failed', f'{stage} response too short', stage
        )
        version, status, reserved, atyp = header
        if version != VERSION5:
            raise VersionError(f"unsupported {stage} response version: {version}", version, stage)
        if status != 0:
            raise ReplyError(f"{stage} failed: {reply_status_message(status)}", status, stage)
        if reserved != RESERVED:
            raise ProtocolError(f"invalid {stage} response reserved byte: {reserved}", stage)

        try:
            size = address_body_length(atyp)
        except UnsupportedError:
            raise UnsupportedError(f"unsupported bind address type: {atyp}", stage) from None

        if size is None:
            length = await session.read_exact(
                1, 'parse fqdn bind address length failed',
                'parse fqdn bind address length failed: bind address length too short', stage
            )
            size = length[0]
            if size == 0:
                raise AddressError("parse fqdn bind address failed: length is zero", stage)
            field = 'fqdn'
        else:
            field = 'ipv4' if atyp == AddrType.IPV4 else 'ipv6'

        body = await session.read_exact(
            size, f'parse {field} bind address failed',
            f'parse {field} bind address failed: bind address too short', stage
        )
        port = await session.read_exact(
            2, 'parse bind port failed', 'parse bind port failed: bind port too short', stage
        )
        try:
            return SocksAddr.from_wire(atyp, body, port)
        except AddressError as e:
            raise AddressError(f"parse {field} bind address failed: {e}", stage) from e

    async def _open_relay(self, session: _Handshake, target: SocksAddr,
                          bind_addr: SocksAddr) -> SocksPacketConn:
        """
        打开到 UDP 中继的端点并包装

        绑定地址为 0.0.0.0 / :: 时，中继位于代理服务器自身的地址上。
        打开端点同样受拨号截止时间和单步超时限制。
        """
        if bind_addr.is_unspecified:
            relay_host = self.addr.to_tuple()[0]
        else:
            relay_host = bind_addr.to_tuple()[0]

        logger.debug(f"打开 UDP 中继: {relay_host}:{bind_addr.port}")
        try:
            inner = await asyncio.wait_for(
                self.dialer.open_datagram(relay_host, bind_addr.port), timeout=session._timeout()
            )
        except asyncio.TimeoutError as e:
            raise DialError(f"dial udp relay {bind_addr} failed: timed out", 'associate') from e
        except OSError as e:
            raise DialError(f"dial udp relay {bind_addr} failed: {e}", 'associate') from e

        if not isinstance(inner, DatagramConnection):
            close = getattr(inner, 'close', None)
            if close is not None:
                close()
            raise ProtocolError("not a packet conn", 'associate')
        sock = inner.get_extra_info('socket')
        if (sock is None or sock.type != socket.SOCK_DGRAM
                or sock.family not in (socket.AF_INET, socket.AF_INET6)):
            inner.close()
            raise ProtocolError("not a udp conn", 'associate')

        dest = None
        if not target.is_unspecified and target.port != 0:
            dest = target
        logger.info(f"UDP 关联已建立: relay={relay_host}:{bind_addr.port}, dest={dest} via {self.addr}")
        return SocksPacketConn(session.conn, inner, dest)


def new_socks_dialer(dialer: BaseDialer, addr: str) -> SocksDialer:
    """
    创建 SOCKS5 拨号器（便捷函数）

    Args:
        dialer: 传输能力
        addr: 代理服务器地址 "host:port"

    Raises:
        AddressError: 代理地址无效
    """
    return SocksDialer(dialer, addr)
