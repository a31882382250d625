"""配置管理模块"""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .labels import DEFAULT_README_PATH

logger = logging.getLogger(__name__)

# 默认配置
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 9091
DEFAULT_CONFIG_DIR = "./config"
CONFIG_FILE_NAME = "console.yaml"


@dataclass
class ServerSettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT


@dataclass
class DockerSettings:
    cli: str = "docker"                       # 轮询统计时调用的命令行
    cli_timeout: float = 10.0                 # 秒
    network: str = "versanode"                # 非 host 模式下容器加入的网络
    readme_path: str = DEFAULT_README_PATH


@dataclass
class StatsSettings:
    watchdog_delay: float = 1.0               # 等待推流首个采样的时间（秒）
    poll_interval: float = 2.0                # 回退轮询间隔（秒）
    max_concurrent_polls: int = 0             # 同时执行的轮询数上限，0 表示不限
    refresh_interval: float = 5.0             # 容器列表刷新间隔（秒）


@dataclass
class ConsoleSettings:
    server: ServerSettings = field(default_factory=ServerSettings)
    docker: DockerSettings = field(default_factory=DockerSettings)
    stats: StatsSettings = field(default_factory=StatsSettings)


# 环境变量 -> (配置段, 字段)
ENV_OVERRIDES = {
    "HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "DOCKER_CLI": ("docker", "cli"),
    "VNCP_NETWORK": ("docker", "network"),
    "VNCP_POLL_INTERVAL": ("stats", "poll_interval"),
    "VNCP_MAX_CONCURRENT_POLLS": ("stats", "max_concurrent_polls"),
}


class ConfigManager:
    """配置管理器"""

    def __init__(self, config_dir: str | None = None):
        self.config_dir = Path(config_dir or os.getenv("CONFIG_DIR", DEFAULT_CONFIG_DIR))
        self.config_file = self.config_dir / CONFIG_FILE_NAME
        self._settings = ConsoleSettings()

        self._load()
        self._apply_env()

    @property
    def settings(self) -> ConsoleSettings:
        return self._settings

    def _load(self) -> None:
        """从 YAML 文件加载配置，不存在时写入默认配置"""
        if not self.config_file.exists():
            logger.info("配置文件不存在，创建默认配置: %s", self.config_file)
            self.save()
            return

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError("配置文件顶层必须是映射")

            for section_name, values in data.items():
                section = getattr(self._settings, section_name, None)
                if section is None or not isinstance(values, dict):
                    logger.warning("忽略未知配置段: %s", section_name)
                    continue
                self._merge(section, values)

            logger.info("已加载配置: %s", self.config_file)
        except Exception as e:
            logger.error("加载配置失败，使用默认配置: %s", e)
            self._settings = ConsoleSettings()

    def _merge(self, section: Any, values: dict[str, Any]) -> None:
        for key, value in values.items():
            if not hasattr(section, key):
                logger.warning("忽略未知配置项: %s", key)
                continue
            current = getattr(section, key)
            setattr(section, key, _coerce(value, current))

    def _apply_env(self) -> None:
        for env_name, (section_name, key) in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value is None or value == "":
                continue
            section = getattr(self._settings, section_name)
            try:
                setattr(section, key, _coerce(value, getattr(section, key)))
            except ValueError:
                logger.warning("环境变量 %s 的值无效: %s", env_name, value)

    def save(self) -> None:
        """保存配置到文件"""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            # 原子写入
            temp_file = self.config_file.with_suffix('.tmp')
            with open(temp_file, 'w', encoding='utf-8') as f:
                yaml.safe_dump(asdict(self._settings), f, allow_unicode=True, default_flow_style=False)
            temp_file.replace(self.config_file)
            logger.debug("配置已保存: %s", self.config_file)
        except Exception as e:
            logger.error("保存配置失败: %s", e)


def _coerce(value: Any, current: Any) -> Any:
    """按默认值的类型转换配置值"""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str):
        return str(value)
    return value
