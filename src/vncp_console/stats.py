"""容器资源统计解析

处理两种来源的统计数据：
- Docker stats 流（JSON，每行一个对象）
- ``docker stats --no-stream`` 命令输出（``CPU%|MemUsage``）
"""

import json
import logging
import math
from typing import Any, Iterator

from .models import StatsSnapshot

logger = logging.getLogger(__name__)

BYTE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")

# docker stats --format 模板
CLI_STATS_FORMAT = "{{.CPUPerc}}|{{.MemUsage}}"


def _num(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return 0.0


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _first(mapping: dict, *keys: str) -> float:
    """按顺序取第一个存在的字段（cgroup v1/v2 字段名不同）"""
    for key in keys:
        if mapping.get(key) is not None:
            return _num(mapping[key])
    return 0.0


def normalize_stats(sample: Any) -> StatsSnapshot:
    """将引擎返回的统计对象归一化为 StatsSnapshot

    缺失或非数值字段一律按 0 处理。
    """
    sample = _dict(sample)
    cpu = _dict(sample.get("cpu_stats"))
    precpu = _dict(sample.get("precpu_stats"))
    cpu_usage = _dict(cpu.get("cpu_usage"))

    # 仅在字段缺失时回退；引擎报告的 0 保留，CPU 显示为 0
    if cpu.get("online_cpus") is not None:
        online = _num(cpu.get("online_cpus"))
    else:
        percpu = cpu_usage.get("percpu_usage")
        online = float(len(percpu)) if isinstance(percpu, list) else 1.0

    memory = _dict(sample.get("memory_stats"))
    memory_detail = _dict(memory.get("stats"))

    return StatsSnapshot(
        cpu_usage_total=_num(cpu_usage.get("total_usage")),
        cpu_usage_prev=_num(_dict(precpu.get("cpu_usage")).get("total_usage")),
        system_usage_total=_num(cpu.get("system_cpu_usage")),
        system_usage_prev=_num(precpu.get("system_cpu_usage")),
        online_cpu_count=online,
        memory_usage_raw=_first(memory, "usage", "usage_in_bytes"),
        memory_cache_like=_first(memory_detail, "cache", "inactive_file", "total_inactive_file"),
        memory_limit=_first(memory, "limit", "max_usage"),
    )


def format_bytes(n: float) -> str:
    """按二进制单位格式化字节数

    小于 10 保留两位小数，小于 100 保留一位，其余取整。
    """
    if not isinstance(n, (int, float)) or not math.isfinite(n) or n <= 0:
        return "0 B"
    value = float(n)
    i = 0
    while value >= 1024 and i < len(BYTE_UNITS) - 1:
        value /= 1024
        i += 1
    precision = 2 if value < 10 else 1 if value < 100 else 0
    return f"{value:.{precision}f} {BYTE_UNITS[i]}"


def format_cpu(percent: float) -> str:
    return f"{percent:.2f}%"


def memory_display(snapshot: StatsSnapshot) -> str:
    """内存显示文本：使用量 [/ 限制]"""
    usage = format_bytes(snapshot.memory_usage)
    if snapshot.memory_limit > 0:
        return f"{usage} / {format_bytes(snapshot.memory_limit)}"
    return usage


def iter_stream_samples(chunk: Any) -> Iterator[dict]:
    """从 stats 流的一个数据块中解析出统计对象

    数据块可能是单个 dict，也可能是多行 JSON 文本；
    单行解析失败时跳过，不影响同一块中的其他行。
    """
    if chunk is None:
        return
    if isinstance(chunk, dict):
        yield chunk
        return
    if isinstance(chunk, (bytes, bytearray)):
        chunk = chunk.decode("utf-8", errors="replace")
    if not isinstance(chunk, str):
        return

    for line in chunk.strip().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            logger.debug("跳过无法解析的统计行: %.80s", line)
            continue
        if isinstance(obj, dict):
            yield obj


def parse_cli_stats(output: str | bytes | None) -> tuple[float, str] | None:
    """解析 docker stats --no-stream 的输出

    Returns:
        (cpu_percent, mem_usage)；输出为空时返回 None
    """
    if output is None:
        return None
    if isinstance(output, (bytes, bytearray)):
        output = output.decode("utf-8", errors="replace")

    lines = output.strip().splitlines()
    line = lines[0] if lines else ""
    fields = [part.strip() for part in line.split("|")]
    cpu_field = fields[0] if fields else ""
    mem_field = fields[1] if len(fields) > 1 else ""
    if not cpu_field and not mem_field:
        return None

    try:
        cpu = float(cpu_field.rstrip("%").strip())
        if not math.isfinite(cpu):
            cpu = 0.0
    except ValueError:
        cpu = 0.0
    return cpu, mem_field
