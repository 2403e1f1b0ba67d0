#!/usr/bin/env python3
"""
SOCKS5 拨号器 - 命令行客户端

通过 SOCKS5 代理向目标地址发送一次数据并打印应答，用于验证代理是否可用。

- tcp: CONNECT 后写入数据，读取一次应答
- udp: UDP ASSOCIATE 后通过中继发送一个数据报，等待一个应答数据报

使用示例:
    python3 client.py --proxy 127.0.0.1:1080 example.com:80 --data $'HEAD / HTTP/1.0\\r\\n\\r\\n'
    python3 client.py --proxy 127.0.0.1:1080 --network udp 8.8.8.8:53 --hex --data <dns 查询>
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from config import DialerConfig, load_config
from dialer import SocksDialer
from logger import LogConfig, add_context, setup_logging
from socks_protocol import SocksError

logger = logging.getLogger('socks-dialer-client')

READ_SIZE = 65535


async def run_client(config: DialerConfig, network: str, target: str, data: bytes,
                     timeout: Optional[float], wait: float) -> int:
    """
    拨号、发送数据并打印应答

    Args:
        config: 拨号器配置
        network: "tcp" 或 "udp"
        target: 目标地址 "host:port"
        data: 要发送的数据
        timeout: 拨号超时（秒）
        wait: 等待应答的时间（秒）

    Returns:
        int: 退出码
    """
    socks = SocksDialer.from_config(config)

    if network == 'tcp':
        conn = await socks.dial('tcp', target, timeout=timeout)
        async with conn:
            if data:
                await conn.write(data)
            response = await asyncio.wait_for(conn.read(READ_SIZE), timeout=wait)
        logger.info(f"收到 {len(response)} 字节")
        sys.stdout.buffer.write(response)
        sys.stdout.buffer.flush()
        return 0

    relay = await socks.dial('udp', target, timeout=timeout)
    async with relay:
        relay.send_to(data, target)
        payload, source = await asyncio.wait_for(relay.recv_from(), timeout=wait)
    logger.info(f"收到 {len(payload)} 字节, 来源 {source}")
    sys.stdout.buffer.write(payload)
    sys.stdout.buffer.flush()
    return 0


def main(argv=None):
    """
    主函数 - 解析命令行参数并运行客户端

    命令行参数:
        --config, -c: 配置文件路径 (默认: config.yaml)
        --proxy: 代理服务器地址 host:port
        --network, -n: tcp 或 udp (默认: tcp)
        --timeout, -t: 拨号超时（秒）
        --wait, -w: 等待应答的时间（秒，默认: 5）
        --data: 要发送的数据
        --hex: 将 --data 按十六进制解码
        --debug, -d: 启用调试模式
        target: 目标地址 host:port
    """
    parser = argparse.ArgumentParser(description='SOCKS5 拨号器客户端')
    parser.add_argument('target', help='目标地址 host:port')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--proxy', default=None, help='代理服务器地址 host:port')
    parser.add_argument('--network', '-n', choices=['tcp', 'udp'], default='tcp', help='网络类型')
    parser.add_argument('--timeout', '-t', type=float, default=None, help='拨号超时（秒）')
    parser.add_argument('--wait', '-w', type=float, default=5.0, help='等待应答的时间（秒）')
    parser.add_argument('--data', default='', help='要发送的数据')
    parser.add_argument('--hex', action='store_true', help='将 --data 按十六进制解码')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args(argv)

    config_data = load_config(args.config)
    log_config = LogConfig.from_dict(config_data.get('logging'))
    if args.debug:
        log_config.level = 'DEBUG'
    setup_logging(log_config)

    # 命令行参数优先于配置文件
    config = DialerConfig.from_dict(config_data.get('dialer'))
    if args.proxy:
        config.proxy = args.proxy

    try:
        data = bytes.fromhex(args.data) if args.hex else args.data.encode()
    except ValueError as e:
        logger.error(f"--data 不是有效的十六进制: {e}")
        return 2

    add_context(proxy=config.proxy, network=args.network, target=args.target)
    logger.info(f"客户端配置: 代理={config.proxy}, 网络={args.network}, 目标={args.target}")

    try:
        return asyncio.run(run_client(config, args.network, args.target, data,
                                      args.timeout, args.wait))
    except SocksError as e:
        logger.error(f"SOCKS5 错误 [{e.stage}]: {e}")
        return 1
    except asyncio.TimeoutError:
        logger.error("等待应答超时")
        return 1
    except OSError as e:
        logger.error(f"连接错误: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("收到键盘中断信号")
        return 130


if __name__ == '__main__':
    sys.exit(main())
