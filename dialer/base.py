"""
拨号器基础类

本模块定义了 SOCKS5 会话协商器依赖的传输能力接口：
- 打开 TCP 流连接
- 打开已连接的 UDP 数据报端点

会话协商器只依赖此接口，默认实现见 transport.NetDialer，
测试中可以替换为内存中的桩实现。
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Tuple


class BaseDialer(ABC):
    """
    传输能力接口，提供带超时/取消语义的 TCP 和 UDP 拨号
    """

    @abstractmethod
    async def open_connection(self, host: str,
                              port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        打开 TCP 连接

        Args:
            host: 目标主机（IP 或域名）
            port: 目标端口

        Returns:
            Tuple[StreamReader, StreamWriter]: 流读写对

        Raises:
            OSError: 连接失败
            asyncio.TimeoutError: 连接超时
        """

    @abstractmethod
    async def open_datagram(self, host: str, port: int):
        """
        打开已连接到 (host, port) 的 UDP 端点

        Args:
            host: 目标主机（IP 或域名）
            port: 目标端口

        Returns:
            DatagramConnection: 数据报连接

        Raises:
            OSError: 创建或连接失败
        """
