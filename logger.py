"""
SOCKS5 拨号器 - 日志管理模块

功能概述:
本模块提供了日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、上下文）
4. 配置文件和环境变量支持

上下文字段默认为 proxy / network / target，由 CLI 在拨号前设置。
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import load_config

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"
DEFAULT_CONTEXT_FIELDS = ["proxy", "network", "target"]


def _env_bool(name: str, default) -> bool:
    return str(os.getenv(name, default)).lower() == 'true'


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台（stderr）
        enable_file: 是否输出到文件
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "socks-dialer.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    context_fields: List[str] = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = list(DEFAULT_CONTEXT_FIELDS)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'LogConfig':
        """
        从配置字典创建日志配置，LOG_* 环境变量优先

        Args:
            data: 配置文件中 logging 段的内容
        """
        data = data or {}
        defaults = cls()
        return cls(
            level=os.getenv('LOG_LEVEL', data.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', data.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', data.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', data.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', data.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', data.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', data.get('format_string', defaults.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', data.get('enable_console', True)),
            enable_file=_env_bool('LOG_ENABLE_FILE', data.get('enable_file', False)),
            context_fields=data.get('context_fields', list(DEFAULT_CONTEXT_FIELDS)),
        )


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加上下文信息
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []
        self.context_data = {}

    def add_context(self, **kwargs):
        self.context_data.update(kwargs)

    def clear_context(self):
        self.context_data.clear()

    def filter(self, record):
        context_parts = []
        for field in self.context_fields:
            value = self.context_data.get(field, "-")
            context_parts.append(f"{field}={value}")

        record.context = " | ".join(context_parts)
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出和结构化格式
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 没有经过 ContextFilter 的记录也要能格式化
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和上下文信息，单例
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self._initialized = True

    def initialize(self, config: Optional[LogConfig] = None, config_file: Optional[str] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选）
            config_file: 配置文件路径（可选），读取其中的 logging 段
        """
        if config:
            self.config = config
        elif config_file:
            self.config = LogConfig.from_dict(load_config(config_file).get('logging'))
        else:
            self.config = LogConfig.from_dict(None)

        self._setup_root_logger()
        self._setup_context_filter()

    def _level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())

        root_logger.handlers.clear()

        if self.config.enable_console:
            self._add_console_handler(root_logger)

        if self.config.enable_file:
            self._add_file_handler(root_logger)

    def _setup_context_filter(self):
        # 过滤器挂在 handler 上，子 logger 的记录也能带上上下文
        self.context_filter = ContextFilter(self.config.context_fields)
        for handler in logging.getLogger().handlers:
            handler.addFilter(self.context_filter)

    def _add_console_handler(self, logger: logging.Logger):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(self._level())
        console_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stderr.isatty()
        ))
        logger.addHandler(console_handler)

    def _add_file_handler(self, logger: logging.Logger):
        """
        添加文件处理器（支持轮转）
        """
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / self.config.log_file

        if self.config.rotation_type == 'size':
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        elif self.config.rotation_type == 'date':
            file_handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        else:
            file_handler = logging.FileHandler(filename=log_file_path, encoding='utf-8')

        file_handler.setLevel(self._level())
        file_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        logger.addHandler(file_handler)

    def add_context(self, **kwargs):
        if self.context_filter:
            self.context_filter.add_context(**kwargs)

    def clear_context(self):
        if self.context_filter:
            self.context_filter.clear_context()


def setup_logging(config: Optional[LogConfig] = None, config_file: Optional[str] = None):
    """
    初始化日志系统（便捷函数）
    """
    LoggerManager().initialize(config=config, config_file=config_file)


def add_context(**kwargs):
    """
    添加上下文信息（便捷函数）

    Args:
        **kwargs: 上下文键值对
    """
    LoggerManager().add_context(**kwargs)


def clear_context():
    """
    清除上下文信息（便捷函数）
    """
    LoggerManager().clear_context()
