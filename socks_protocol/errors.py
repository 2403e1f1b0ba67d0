"""
SOCKS5 拨号器 - 错误定义模块

所有错误都携带 stage（握手阶段）标签，便于区分形状相似的应答。

错误分类:
- DialError: 传输层错误（连接/读/写失败），保留原始异常
- ShortReplyError: 帧错误（读到的字节数不足）
- VersionError: 协议版本不匹配
- ReplyError: 代理服务器返回的失败状态码
- ProtocolError: 其他不符合协议的字段（保留字节、句柄类型等）
- UnsupportedError: 不支持的特性（未知地址类型、网络类型、UDP 分片）
- AddressError: 地址解析/转换失败
- DestinationError: UDP 中继目的地址与关联时记录的不一致
"""

from typing import Optional


class SocksError(Exception):
    """
    SOCKS5 错误基类

    Attributes:
        stage: 产生错误的握手阶段（如 "negotiation", "connect", "associate", "relay"）
    """

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class DialError(SocksError):
    """传输层错误，原始异常通过 __cause__ 保留"""


class ShortReplyError(SocksError):
    """应答过短"""


class VersionError(SocksError):
    """
    协议版本不匹配

    Attributes:
        version: 实际收到的版本号
    """

    def __init__(self, message: str, version: int, stage: Optional[str] = None):
        super().__init__(message, stage)
        self.version = version


class ReplyError(SocksError):
    """
    代理服务器拒绝了请求

    Attributes:
        status: 应答中的 REP 状态码
    """

    def __init__(self, message: str, status: int, stage: Optional[str] = None):
        super().__init__(message, stage)
        self.status = status


class ProtocolError(SocksError):
    """应答字段不符合协议"""


class UnsupportedError(SocksError):
    """不支持的特性"""


class AddressError(SocksError, ValueError):
    """地址错误"""


class DestinationError(SocksError, ValueError):
    """UDP 中继目的地址错误"""
