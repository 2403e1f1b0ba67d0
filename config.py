"""
SOCKS5 拨号器 - 配置管理模块
加载和保存配置文件，管理拨号器配置。

功能概述:
本模块提供了配置管理功能，包括：
1. 拨号器配置数据类
2. YAML 配置文件的加载和保存
3. 环境变量覆盖

配置文件格式 (config.yaml):
    dialer:
      proxy: 127.0.0.1:1080
      timeout: 5.0
      handshake_timeout: 10.0
      interface: eth0
      local_address: 0.0.0.0:0
    logging:
      level: INFO

环境变量（优先于配置文件）:
- SOCKS_PROXY
- SOCKS_TIMEOUT
- SOCKS_HANDSHAKE_TIMEOUT
- SOCKS_INTERFACE
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class DialerConfig:
    """
    拨号器配置数据类

    Attributes:
        proxy: 代理服务器地址 "host:port"（默认: "127.0.0.1:1080"）
        timeout: 传输层连接超时（秒，默认: 5.0）
        handshake_timeout: 握手中每次读写的超时（秒，默认: 10.0）
        interface: 绑定的网卡名（可选）
        local_address: 源地址 (host, port)（可选）
    """
    proxy: str = "127.0.0.1:1080"
    timeout: Optional[float] = 5.0
    handshake_timeout: Optional[float] = 10.0
    interface: Optional[str] = None
    local_address: Optional[Tuple[str, int]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'DialerConfig':
        """
        从配置字典创建配置对象，环境变量优先

        Args:
            data: 配置文件中 dialer 段的内容

        Returns:
            DialerConfig: 配置对象

        Raises:
            ValueError: 数值字段或 local_address 格式错误
        """
        data = data or {}
        defaults = cls()

        timeout = os.getenv('SOCKS_TIMEOUT', data.get('timeout', defaults.timeout))
        handshake_timeout = os.getenv(
            'SOCKS_HANDSHAKE_TIMEOUT', data.get('handshake_timeout', defaults.handshake_timeout)
        )

        return cls(
            proxy=os.getenv('SOCKS_PROXY', data.get('proxy', defaults.proxy)),
            timeout=_optional_float(timeout),
            handshake_timeout=_optional_float(handshake_timeout),
            interface=os.getenv('SOCKS_INTERFACE', data.get('interface')) or None,
            local_address=_parse_local_address(data.get('local_address')),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'proxy': self.proxy,
            'timeout': self.timeout,
            'handshake_timeout': self.handshake_timeout,
        }
        if self.interface:
            data['interface'] = self.interface
        if self.local_address:
            data['local_address'] = f"{self.local_address[0]}:{self.local_address[1]}"
        return data


def _optional_float(value) -> Optional[float]:
    if value is None or value == '':
        return None
    return float(value)


def _parse_local_address(value) -> Optional[Tuple[str, int]]:
    """解析 "host:port" 或 [host, port] 形式的源地址"""
    if not value:
        return None
    if isinstance(value, (list, tuple)):
        host, port = value
        return str(host), int(port)
    host, sep, port = str(value).rpartition(':')
    if not sep:
        raise ValueError(f"invalid local_address: {value}")
    return host.strip('[]'), int(port)


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}


def save_config(config_file: str, config_data: Dict[str, Any]) -> bool:
    """
    保存配置文件

    将配置数据保存到 YAML 格式的配置文件中

    Args:
        config_file: 配置文件路径
        config_data: 要保存的配置数据字典

    Returns:
        bool: 保存成功返回 True，失败返回 False
    """
    try:
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, default_flow_style=False, allow_unicode=True)
        return True
    except OSError as e:
        logger.error(f"保存配置文件失败: {e}")
        return False


def load_dialer_config(config_file: str) -> DialerConfig:
    """
    加载拨号器配置（便捷函数）

    Args:
        config_file: 配置文件路径

    Returns:
        DialerConfig: 配置对象，文件缺失时使用默认值和环境变量
    """
    return DialerConfig.from_dict(load_config(config_file).get('dialer'))
