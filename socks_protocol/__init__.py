"""
SOCKS5 协议包

本包提供了 SOCKS5 客户端的协议定义和实现，包括：
- 核心协议常量、命令和地址类型
- SocksAddr 地址类及编码/解码
- 应答状态码表和请求帧构造函数
- 错误类型

使用示例：
    from socks_protocol import SocksAddr, make_command_request, CMD_CONNECT

    # 解析地址
    addr = SocksAddr.parse('example.com:443')

    # 编码请求
    data = make_command_request(CMD_CONNECT, addr)

    # 解码地址
    addr2, remaining = SocksAddr.unpack(addr.pack())
"""

from .core import (
    # 协议常量
    VERSION5,
    METHOD_NO_AUTH,
    METHOD_USER_PASS,
    AUTH_SUCCEEDED,
    RESERVED,
    NO_FRAGMENT,
    MAX_FQDN_LENGTH,
    MAX_DATAGRAM_SIZE,

    # 枚举
    AddrType,
    Command,
    ATYP_IPV4,
    ATYP_FQDN,
    ATYP_IPV6,
    CMD_CONNECT,
    CMD_BIND,
    CMD_ASSOCIATE,

    # 地址
    SocksAddr,
    UDPAddr,
    UDPFqdnAddr,
    address_body_length,

    # 应答与请求帧
    REPLY_STATUS_MESSAGES,
    reply_status_message,
    make_negotiation_request,
    make_command_request,
    make_udp_header,
)
from .errors import (
    SocksError,
    DialError,
    ShortReplyError,
    VersionError,
    ReplyError,
    ProtocolError,
    UnsupportedError,
    AddressError,
    DestinationError,
)
