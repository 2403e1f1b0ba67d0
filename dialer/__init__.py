"""
SOCKS5 拨号器模块

本模块整合了 SOCKS5 客户端的核心功能，提供了统一的拨号接口。

主要功能包括：
- 方法协商（仅无认证）
- CONNECT / UDP ASSOCIATE 请求
- 绑定地址解析
- UDP 中继数据报封装

使用示例：
    from dialer import NetDialer, SocksDialer

    socks = SocksDialer(NetDialer(timeout=5.0), '127.0.0.1:1080')

    # TCP
    conn = await socks.dial('tcp', 'example.com:80')
    await conn.write(b'GET / HTTP/1.0\\r\\n\\r\\n')

    # UDP
    relay = await socks.dial('udp', '8.8.8.8:53')
    relay.write(query)
    answer, source = await relay.recv_from()
"""

from .base import BaseDialer


# 延迟导入，避免只使用接口定义时加载 asyncio 传输实现
def __getattr__(name):
    if name in ('NetDialer', 'StreamConnection', 'DatagramConnection'):
        from . import transport
        return getattr(transport, name)
    elif name in ('SocksDialer', 'new_socks_dialer'):
        from . import socks
        return getattr(socks, name)
    elif name == 'SocksPacketConn':
        from .packet_conn import SocksPacketConn
        return SocksPacketConn
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'BaseDialer',
    'NetDialer',
    'StreamConnection',
    'DatagramConnection',
    'SocksDialer',
    'new_socks_dialer',
    'SocksPacketConn',
]
