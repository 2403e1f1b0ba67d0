"""
SOCKS5 拨号器 - 核心协议模块
定义 SOCKS5 协议的常量、地址编解码和请求帧格式。

功能概述:
本模块提供了 SOCKS5 客户端的线路格式定义，被会话协商器和 UDP 中继共享，
确保握手请求、应答解析和中继数据报使用相同的地址编码。

主要功能:
1. 协议常量定义 - 版本号、认证方法、命令、地址类型
2. 地址类 SocksAddr - 文本解析、线路编码、线路解码
3. 应答状态码表 - 将 REP 字段映射为可读的原因
4. 请求帧构造函数

地址格式:
┌─────────┬──────────────────────────────┬──────────┐
│ ATYP    │ 地址                         │ 端口     │
│ 1 字节  │ 4 / 1+N / 16 字节            │ 2 字节   │
└─────────┴──────────────────────────────┴──────────┘

ATYP: 0x01 IPv4, 0x03 域名（首字节为长度）, 0x04 IPv6
所有多字节字段使用大端序（网络字节序）。
"""

import ipaddress
import logging
import re
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple, Union

from .errors import AddressError, ShortReplyError, UnsupportedError

logger = logging.getLogger('socks-dialer-protocol')


# ============================================================================
# 协议常量
# ============================================================================

VERSION5 = 0x05

METHOD_NO_AUTH = 0x00
METHOD_USER_PASS = 0x02

AUTH_SUCCEEDED = 0x00
RESERVED = 0x00
NO_FRAGMENT = 0x00

MAX_FQDN_LENGTH = 255
MAX_DATAGRAM_SIZE = 65535

_PORT_RE = re.compile(r'[0-9]+')


class AddrType(IntEnum):
    """
    地址类型（ATYP）

    - IPV4: 4 字节地址
    - FQDN: 1 字节长度 + 域名
    - IPV6: 16 字节地址
    """
    IPV4 = 0x01
    FQDN = 0x03
    IPV6 = 0x04


class Command(IntEnum):
    """
    SOCKS5 命令

    BIND 只作为常量存在，客户端从不发送。
    """
    CONNECT = 0x01
    BIND = 0x02
    ASSOCIATE = 0x03


ATYP_IPV4 = AddrType.IPV4
ATYP_FQDN = AddrType.FQDN
ATYP_IPV6 = AddrType.IPV6

CMD_CONNECT = Command.CONNECT
CMD_BIND = Command.BIND
CMD_ASSOCIATE = Command.ASSOCIATE


# ============================================================================
# 应答状态码
# ============================================================================

REPLY_STATUS_MESSAGES = {
    0x01: "general socks server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "ttl expired",
    0x07: "command not supported",
    0x08: "address type not supported",
    0x09: "host unreachable",
}


def reply_status_message(status: int) -> str:
    """
    将应答中的 REP 状态码转换为可读原因

    Args:
        status: REP 字段值

    Returns:
        str: 状态描述，表外的值返回 "unassigned"
    """
    return REPLY_STATUS_MESSAGES.get(status, "unassigned")


# ============================================================================
# 网络端点
# ============================================================================

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class UDPAddr:
    """
    已解析的 UDP 端点

    Attributes:
        ip: IP 地址
        port: 端口
    """
    ip: IPAddress
    port: int

    network = 'udp'

    def to_tuple(self) -> Tuple[str, int]:
        """返回 socket 模块使用的 (host, port) 形式"""
        return str(self.ip), self.port

    def __str__(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


class UDPFqdnAddr(str):
    """
    未解析的 UDP 端点

    字符串形式为 "name:port"，network 为 "udp"，用于在不强制解析域名的情况下
    传递中继目标。
    """

    @property
    def network(self) -> str:
        return 'udp'


# ============================================================================
# SOCKS5 地址
# ============================================================================

def _parse_port(text: str) -> int:
    if not _PORT_RE.fullmatch(text):
        raise AddressError("invalid port")
    port = int(text)
    if port > 65535:
        raise AddressError("invalid port")
    return port


def _unmap(addr: IPAddress) -> IPAddress:
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def address_body_length(atyp: int) -> Optional[int]:
    """
    返回地址类型对应的定长地址长度

    Args:
        atyp: 地址类型字节

    Returns:
        Optional[int]: IPv4 返回 4，IPv6 返回 16，域名（变长）返回 None

    Raises:
        UnsupportedError: 未知的地址类型
    """
    if atyp == AddrType.IPV4:
        return 4
    if atyp == AddrType.IPV6:
        return 16
    if atyp == AddrType.FQDN:
        return None
    raise UnsupportedError(f"unsupported address type: {atyp}")


@dataclass(frozen=True)
class SocksAddr:
    """
    SOCKS5 可寻址端点

    host 的类型决定地址的变体：ipaddress 对象表示已解析地址，str 表示域名。
    两者不会同时存在，编码时不需要判断优先级。

    Attributes:
        host: IPv4Address / IPv6Address / 域名字符串
        port: 端口（0-65535）
    """
    host: Union[IPAddress, str]
    port: int

    def __post_init__(self):
        if isinstance(self.host, str):
            if not self.host:
                raise AddressError("empty fqdn")
            if len(self.host.encode('utf-8')) > MAX_FQDN_LENGTH:
                raise AddressError("address too long")
        elif isinstance(self.host, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            object.__setattr__(self, 'host', _unmap(self.host))
        else:
            raise AddressError(f"invalid host type: {type(self.host).__name__}")
        if not isinstance(self.port, int) or isinstance(self.port, bool) or not 0 <= self.port <= 65535:
            raise AddressError("invalid port")

    @classmethod
    def parse(cls, text: str) -> 'SocksAddr':
        """
        解析 "host:port" 形式的地址

        支持以下格式:
        - "1.2.3.4:80"
        - "[2001:db8::1]:80" 或不带方括号的 "::1:53"（以最后一个冒号分隔端口）
        - "example.com:80"

        IPv4 映射的 IPv6 地址会被还原为 IPv4。

        Args:
            text: 地址文本

        Returns:
            SocksAddr: 解析后的地址

        Raises:
            AddressError: 缺少冒号、域名过长、端口非法
        """
        if text.startswith('['):
            end = text.find(']')
            if end < 0 or text[end + 1:end + 2] != ':':
                raise AddressError("invalid socksaddr")
            try:
                addr = ipaddress.IPv6Address(text[1:end])
            except ValueError:
                raise AddressError("invalid socksaddr") from None
            return cls(addr, _parse_port(text[end + 2:]))

        if ':' not in text:
            raise AddressError("invalid socksaddr")
        host, _, port_text = text.rpartition(':')
        if not host:
            raise AddressError("invalid socksaddr")

        try:
            addr = ipaddress.ip_address(host)
        except ValueError:
            addr = None
        if addr is not None:
            return cls(addr, _parse_port(port_text))

        if ':' in host:
            raise AddressError("invalid socksaddr")
        if len(host.encode('utf-8')) > MAX_FQDN_LENGTH:
            raise AddressError("address too long")
        return cls(host, _parse_port(port_text))

    @classmethod
    def from_fqdn_port(cls, fqdn: str, port: int) -> 'SocksAddr':
        """由域名和端口构造地址"""
        return cls(fqdn, port)

    @classmethod
    def from_addr_port(cls, addr: Union[IPAddress, str], port: int) -> 'SocksAddr':
        """由 IP 地址和端口构造地址"""
        if isinstance(addr, str):
            try:
                addr = ipaddress.ip_address(addr)
            except ValueError:
                raise AddressError(f"invalid ip address: {addr}") from None
        return cls(addr, port)

    @property
    def is_fqdn(self) -> bool:
        return isinstance(self.host, str)

    @property
    def atyp(self) -> AddrType:
        if self.is_fqdn:
            return AddrType.FQDN
        if self.host.version == 4:
            return AddrType.IPV4
        return AddrType.IPV6

    @property
    def is_unspecified(self) -> bool:
        """已解析地址为 0.0.0.0 / :: 时为 True，域名永远为 False"""
        return not self.is_fqdn and self.host.is_unspecified

    def pack(self) -> bytes:
        """
        将地址编码为线路格式

        Returns:
            bytes: ATYP + 地址 + 端口（大端序）
        """
        if self.is_fqdn:
            name = self.host.encode('utf-8')
            body = bytes([AddrType.FQDN, len(name)]) + name
        else:
            body = bytes([self.atyp]) + self.host.packed
        return body + struct.pack('>H', self.port)

    @classmethod
    def from_wire(cls, atyp: int, body: bytes, port_bytes: bytes) -> 'SocksAddr':
        """
        由已读取的线路字段构造地址

        Args:
            atyp: 地址类型字节
            body: 地址字节（域名不含长度前缀）
            port_bytes: 2 字节端口

        Returns:
            SocksAddr: 完整的地址

        Raises:
            UnsupportedError: 未知的地址类型
            AddressError: 地址字节无效
        """
        port = struct.unpack('>H', port_bytes)[0]
        if atyp == AddrType.IPV4:
            return cls(ipaddress.IPv4Address(body), port)
        if atyp == AddrType.IPV6:
            return cls(ipaddress.IPv6Address(body), port)
        if atyp == AddrType.FQDN:
            try:
                name = body.decode('utf-8')
            except UnicodeDecodeError:
                raise AddressError("invalid fqdn encoding") from None
            return cls(name, port)
        raise UnsupportedError(f"unsupported address type: {atyp}")

    @classmethod
    def unpack(cls, data: bytes) -> Tuple['SocksAddr', bytes]:
        """
        从完整的缓冲区中解码地址

        Args:
            data: 以 ATYP 开头的字节数据

        Returns:
            Tuple[SocksAddr, bytes]: (地址, 剩余数据)

        Raises:
            ShortReplyError: 数据被截断
            UnsupportedError: 未知的地址类型
            AddressError: 域名长度为 0
        """
        if not data:
            raise ShortReplyError("address type too short")
        atyp = data[0]
        size = address_body_length(atyp)
        offset = 1
        if size is None:
            if len(data) < 2:
                raise ShortReplyError("fqdn length too short")
            size = data[1]
            if size == 0:
                raise AddressError("fqdn length is zero")
            offset = 2
        end = offset + size
        if len(data) < end + 2:
            raise ShortReplyError("address too short")
        addr = cls.from_wire(atyp, data[offset:end], data[end:end + 2])
        return addr, data[end + 2:]

    def net_addr(self) -> Union[UDPAddr, UDPFqdnAddr]:
        """
        转换为通用网络端点

        Returns:
            已解析地址返回 UDPAddr，域名返回 UDPFqdnAddr
        """
        if self.is_fqdn:
            return UDPFqdnAddr(str(self))
        return UDPAddr(self.host, self.port)

    def udp_addr(self) -> UDPAddr:
        """
        转换为已解析的 UDP 端点，本层不做域名解析

        Raises:
            AddressError: 地址为域名
        """
        if self.is_fqdn:
            raise AddressError("cannot convert fqdn socksaddr to a udp address")
        return UDPAddr(self.host, self.port)

    def to_tuple(self) -> Tuple[str, int]:
        """返回 (host, port) 形式"""
        return str(self.host), self.port

    def __str__(self) -> str:
        if not self.is_fqdn and self.host.version == 6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


# ============================================================================
# 请求帧
# ============================================================================

def make_negotiation_request() -> bytes:
    """
    创建方法协商请求

    Returns:
        bytes: 05 01 00（版本 5，一个方法，无认证）
    """
    return bytes([VERSION5, 1, METHOD_NO_AUTH])


def make_command_request(cmd: int, addr: SocksAddr) -> bytes:
    """
    创建命令请求

    Args:
        cmd: CONNECT 或 ASSOCIATE
        addr: 目标地址

    Returns:
        bytes: 05 CMD 00 + 编码后的地址
    """
    logger.debug(f"创建命令请求: cmd={cmd}, addr={addr}")
    return bytes([VERSION5, cmd, RESERVED]) + addr.pack()


def make_udp_header(addr: SocksAddr) -> bytes:
    """
    创建 UDP 中继数据报头部

    Returns:
        bytes: 00 00 00（保留字段 + 分片号）+ 编码后的地址
    """
    return bytes([RESERVED, RESERVED, NO_FRAGMENT]) + addr.pack()
