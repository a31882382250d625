"""容器实时统计会话

每个运行中的容器对应一个会话：
1. 优先订阅 stats 推送流
2. 看门狗计时（默认 1 秒）到期时若流仍未送达有效采样，改为轮询 ``docker stats``
3. 一旦进入轮询就不再切回纯推流模式

所有回调都在事件循环线程内执行；会话关闭后到达的回调通过 ``_closed`` 标志丢弃。
"""

import asyncio
import logging
from typing import Any, Callable, Protocol

from .models import ReconcilerMode
from .stats import (
    format_cpu,
    iter_stream_samples,
    memory_display,
    normalize_stats,
    parse_cli_stats,
)

logger = logging.getLogger(__name__)

DEFAULT_WATCHDOG_DELAY = 1.0   # 秒
DEFAULT_POLL_INTERVAL = 2.0    # 秒


class StatsSubscription(Protocol):
    def close(self) -> None: ...


class StatsSource(Protocol):
    """统计数据来源"""

    def open_stream(
        self,
        container_id: str,
        on_chunk: Callable[[Any], None],
    ) -> StatsSubscription | None:
        """订阅 stats 流，on_chunk 必须在事件循环线程内被调用"""
        ...

    async def poll(self, container_id: str) -> str:
        """执行一次非流式统计，返回 ``CPU%|MemUsage`` 格式的输出"""
        ...


class ContainerStatsReconciler:
    """单个容器的 CPU / 内存显示值维护器"""

    def __init__(
        self,
        container_id: str | None,
        running: bool,
        source: StatsSource,
        watchdog_delay: float = DEFAULT_WATCHDOG_DELAY,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_limiter: asyncio.Semaphore | None = None,
    ):
        self.container_id = container_id
        self.running = running
        self.watchdog_delay = watchdog_delay
        self.poll_interval = poll_interval

        self._source = source
        self._poll_limiter = poll_limiter

        self.mode = ReconcilerMode.IDLE
        self.cpu_text = ""
        self.mem_text = ""
        self.polls_issued = 0

        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscription: StatsSubscription | None = None
        self._watchdog: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task | None = None
        self._pending_task: asyncio.Task | None = None
        self._stream_started = False
        self._stream_has_update = False

    # ==================== 生命周期 ====================

    def start(self) -> None:
        """开始采集（必须在事件循环中调用）"""
        if self._closed or self.mode != ReconcilerMode.IDLE:
            return
        if not self.container_id or not self.running:
            return

        self._loop = asyncio.get_running_loop()

        try:
            self._subscription = self._source.open_stream(self.container_id, self._on_chunk)
        except Exception as e:
            logger.debug("订阅容器 %s 统计流失败: %s", self.container_id, e)
            self._subscription = None

        self._watchdog = self._loop.call_later(self.watchdog_delay, self._on_watchdog)
        self.mode = ReconcilerMode.AWAITING

    def stop(self) -> None:
        """停止采集并释放订阅与计时器，可重复调用"""
        self._closed = True

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                subscription.close()
            except Exception as e:
                logger.debug("关闭容器 %s 统计流失败: %s", self.container_id, e)

        watchdog, self._watchdog = self._watchdog, None
        if watchdog is not None:
            try:
                watchdog.cancel()
            except Exception as e:
                logger.debug("取消看门狗失败: %s", e)

        task, self._poll_task = self._poll_task, None
        if task is not None:
            try:
                task.cancel()
            except Exception as e:
                logger.debug("取消轮询任务失败: %s", e)
            self._pending_task = task

        self.mode = ReconcilerMode.STOPPED

    async def aclose(self) -> None:
        """停止并等待轮询任务真正结束"""
        self.stop()
        task, self._pending_task = self._pending_task, None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "ContainerStatsReconciler":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_pending_timers(self) -> bool:
        """是否仍持有看门狗或轮询计时器"""
        return self._watchdog is not None or self._poll_task is not None

    # ==================== 推流路径 ====================

    def _on_chunk(self, chunk: Any) -> None:
        if self._closed or chunk is None:
            return
        self._stream_started = True
        for sample in iter_stream_samples(chunk):
            self._stream_has_update = True
            self._paint(sample)

    def _paint(self, sample: dict) -> None:
        snapshot = normalize_stats(sample)
        self.cpu_text = format_cpu(snapshot.cpu_percent)
        self.mem_text = memory_display(snapshot)

    # ==================== 回退轮询 ====================

    def _on_watchdog(self) -> None:
        self._watchdog = None
        if self._closed:
            return
        if self._stream_started and self._stream_has_update:
            self.mode = ReconcilerMode.STREAMING
            logger.debug("容器 %s 使用推流统计", self.container_id)
            return

        logger.debug("容器 %s 统计流无数据，改为轮询", self.container_id)
        self.mode = ReconcilerMode.POLLING
        self._poll_task = self._loop.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while not self._closed:
            await self._poll_once()
            await asyncio.sleep(self.poll_interval)

    async def _poll_once(self) -> None:
        self.polls_issued += 1
        try:
            if self._poll_limiter is not None:
                async with self._poll_limiter:
                    output = await self._source.poll(self.container_id)
            else:
                output = await self._source.poll(self.container_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("轮询容器 %s 统计失败: %s", self.container_id, e)
            return

        if self._closed:
            return
        parsed = parse_cli_stats(output)
        if parsed is None:
            return
        cpu, mem = parsed
        self.cpu_text = format_cpu(cpu)
        self.mem_text = mem

    # ==================== 读取 ====================

    def snapshot(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "mode": self.mode.value,
            "cpu": self.cpu_text,
            "memory": self.mem_text,
        }
