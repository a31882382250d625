"""数据模型定义"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass
class ProxyDescriptor:
    """容器声明的反向代理映射（来自标签）"""
    slug: str                               # URL 路径段，即 /{slug}
    port: str                               # 容器内部端口（字符串保存）
    nginx_block_text: str | None = None     # Nginx 配置片段
    extra: dict[str, Any] = field(default_factory=dict)  # 标签中的其他字段


@dataclass
class StatsSnapshot:
    """单次统计采样（已归一化 cgroup v1/v2 字段）"""
    cpu_usage_total: float = 0.0
    cpu_usage_prev: float = 0.0
    system_usage_total: float = 0.0
    system_usage_prev: float = 0.0
    online_cpu_count: float = 0.0

    memory_usage_raw: float = 0.0
    memory_cache_like: float = 0.0
    memory_limit: float = 0.0               # 0 表示无限制

    @property
    def cpu_percent(self) -> float:
        """CPU 使用率（百分比，多核可超过 100）"""
        cpu_delta = self.cpu_usage_total - self.cpu_usage_prev
        system_delta = self.system_usage_total - self.system_usage_prev
        if cpu_delta > 0 and system_delta > 0 and self.online_cpu_count > 0:
            return (cpu_delta / system_delta) * self.online_cpu_count * 100.0
        return 0.0

    @property
    def memory_usage(self) -> float:
        """扣除可回收缓存后的内存使用量"""
        return max(0.0, self.memory_usage_raw - self.memory_cache_like)


class ReconcilerMode(str, Enum):
    """统计会话状态"""
    IDLE = "idle"
    AWAITING = "awaiting"        # 已订阅，等待首个采样
    STREAMING = "streaming"
    POLLING = "polling"
    STOPPED = "stopped"


@dataclass
class ContainerSummary:
    """容器列表项"""
    id: str
    name: str
    status: str = "unknown"             # running, exited, paused, created ...
    image: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    proxies: list[ProxyDescriptor] = field(default_factory=list)
    health_status: str = "unknown"      # healthy, unhealthy, unknown

    @property
    def is_running(self) -> bool:
        return self.status == "running"


@dataclass
class CreateContainerSpec:
    """创建容器所需参数（由 API 请求转换而来）"""
    image: str
    name: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    ports: dict[str, int | None] = field(default_factory=dict)  # "8080/tcp" -> 主机端口
    volumes: dict[str, dict[str, str]] = field(default_factory=dict)
    proxies: list[ProxyDescriptor] = field(default_factory=list)
    base_labels: dict[str, str] = field(default_factory=dict)
    host_network: bool = False
    network: str | None = None
    restart_policy: str | None = None
    memory_limit: str | None = None
    start: bool = True
