"""Docker 容器管理模块"""

import asyncio
import logging
import re
import threading
from typing import Any, Callable, Iterable

import docker
from docker.errors import APIError, ImageNotFound, NotFound
from docker.models.containers import Container

from .config import ConsoleSettings, DockerSettings, StatsSettings
from .labels import (
    ProxyValidationError,
    apply_proxies_label,
    decode_proxies,
    read_embedded_readme,
    readme_path,
    validate_proxies,
    wants_host_network,
)
from .models import ContainerSummary, CreateContainerSpec, ProxyDescriptor
from .reconciler import ContainerStatsReconciler
from .stats import CLI_STATS_FORMAT

logger = logging.getLogger(__name__)

# 与引擎的容器名规则一致
CONTAINER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


# ==================== 统计数据来源 ====================

class StatsStream:
    """stats 推流订阅句柄

    SDK 的 stats 生成器是阻塞读取，因此在独立线程中迭代，
    每个数据块通过 call_soon_threadsafe 交给事件循环。
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        open_generator: Callable[[], Iterable[Any]],
        on_chunk: Callable[[Any], None],
        name: str = "stats-stream",
    ):
        self._loop = loop
        self._open_generator = open_generator
        self._on_chunk = on_chunk
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "StatsStream":
        self._thread.start()
        return self

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """停止投递；读取线程在下一个数据块到达后退出"""
        self._closed.set()

    def _deliver(self, chunk: Any) -> None:
        if not self._closed.is_set():
            self._on_chunk(chunk)

    def _run(self) -> None:
        generator = None
        try:
            generator = self._open_generator()
            for chunk in generator:
                if self._closed.is_set():
                    break
                try:
                    self._loop.call_soon_threadsafe(self._deliver, chunk)
                except RuntimeError:
                    # 事件循环已关闭
                    break
        except Exception as e:
            logger.debug("统计流结束: %s", e)
        finally:
            close = getattr(generator, "close", None)
            if close is not None:
                try:
                    close()
                except Exception as e:
                    logger.debug("关闭统计流生成器失败: %s", e)


class DockerStatsSource:
    """基于 Docker SDK（推流）与 docker CLI（轮询）的统计来源"""

    def __init__(self, client_getter: Callable[[], docker.DockerClient], settings: DockerSettings):
        self._client_getter = client_getter
        self._settings = settings

    def open_stream(self, container_id: str, on_chunk: Callable[[Any], None]) -> StatsStream:
        loop = asyncio.get_running_loop()
        api = self._client_getter().api

        def open_generator() -> Iterable[Any]:
            return api.stats(container_id, stream=True, decode=False)

        return StatsStream(
            loop,
            open_generator,
            on_chunk,
            name=f"stats-{container_id[:12]}",
        ).start()

    async def poll(self, container_id: str) -> str:
        """docker stats --no-stream --format '{{.CPUPerc}}|{{.MemUsage}}' <id>"""
        proc = await asyncio.create_subprocess_exec(
            self._settings.cli,
            "stats",
            "--no-stream",
            "--format",
            CLI_STATS_FORMAT,
            container_id,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=self._settings.cli_timeout,
            )
        except (asyncio.TimeoutError, asyncio.CancelledError):
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            raise

        if proc.returncode != 0:
            message = stderr.decode('utf-8', errors='replace').strip()
            raise RuntimeError(f"docker stats 失败 ({proc.returncode}): {message}")
        return stdout.decode('utf-8', errors='replace')


# ==================== 会话注册表 ====================

class StatsRegistry:
    """为每个运行中的容器维护一个统计会话"""

    def __init__(self, source: Any, settings: StatsSettings):
        self._source = source
        self._settings = settings
        self._sessions: dict[str, ContainerStatsReconciler] = {}
        self._poll_limiter = (
            asyncio.Semaphore(settings.max_concurrent_polls)
            if settings.max_concurrent_polls > 0 else None
        )

    def sync(self, containers: Iterable[ContainerSummary]) -> None:
        """根据最新容器列表启动 / 停止会话（必须在事件循环中调用）"""
        running = {c.id for c in containers if c.id and c.is_running}

        for container_id in list(self._sessions):
            if container_id not in running:
                self._sessions.pop(container_id).stop()
                logger.debug("停止统计会话: %s", container_id)

        for container_id in running:
            if container_id in self._sessions:
                continue
            session = ContainerStatsReconciler(
                container_id,
                True,
                self._source,
                watchdog_delay=self._settings.watchdog_delay,
                poll_interval=self._settings.poll_interval,
                poll_limiter=self._poll_limiter,
            )
            session.start()
            self._sessions[container_id] = session
            logger.debug("启动统计会话: %s", container_id)

    def get(self, container_id: str) -> ContainerStatsReconciler | None:
        return self._sessions.get(container_id)

    def discard(self, container_id: str) -> None:
        session = self._sessions.pop(container_id, None)
        if session:
            session.stop()

    def __len__(self) -> int:
        return len(self._sessions)

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.aclose()


# ==================== Docker 管理器 ====================

def summarize_container(container: Container) -> ContainerSummary:
    """SDK 容器对象 -> 列表项"""
    attrs = container.attrs or {}
    config = attrs.get('Config') or {}
    labels = container.labels or config.get('Labels') or {}
    health = (attrs.get('State') or {}).get('Health') or {}
    return ContainerSummary(
        id=container.id,
        name=(container.name or "").lstrip("/"),
        status=container.status,
        image=config.get('Image', ''),
        labels=labels,
        proxies=decode_proxies(labels),
        health_status=health.get('Status', 'unknown'),
    )


class DockerManager:
    """Docker 容器管理器"""

    def __init__(self, settings: ConsoleSettings, stats_source: Any = None):
        self.settings = settings
        self._client: docker.DockerClient | None = None

        # 容器列表缓存
        self._containers: dict[str, ContainerSummary] = {}

        self.stats = StatsRegistry(
            stats_source or DockerStatsSource(lambda: self.client, settings.docker),
            settings.stats,
        )

        # 刷新任务
        self._refresh_task: asyncio.Task | None = None

    @property
    def client(self) -> docker.DockerClient:
        """获取 Docker 客户端（延迟初始化）"""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def initialize(self) -> None:
        """初始化 Docker 管理器"""
        logger.info("初始化 Docker 管理器...")

        try:
            await asyncio.to_thread(self.client.ping)
            logger.info("Docker 连接成功")
        except Exception as e:
            logger.error("Docker 连接失败: %s", e)
            raise RuntimeError(f"无法连接到 Docker: {e}")

        await self.refresh()
        self._refresh_task = asyncio.create_task(self._refresh_loop())

        logger.info("Docker 管理器初始化完成")

    async def _ensure_network(self, name: str) -> None:
        """确保网络存在"""
        try:
            networks = await asyncio.to_thread(self.client.networks.list, names=[name])
            if not networks:
                await asyncio.to_thread(self.client.networks.create, name, driver="bridge")
                logger.info("已创建 Docker 网络: %s", name)
        except Exception as e:
            logger.warning("创建/检查 Docker 网络失败: %s", e)

    async def _get_container(self, container_id: str) -> Container | None:
        """获取容器对象（ID 或名称）"""
        try:
            return await asyncio.to_thread(self.client.containers.get, container_id)
        except NotFound:
            return None
        except Exception as e:
            logger.error("获取容器 %s 失败: %s", container_id, e)
            return None

    # ==================== 列表与刷新 ====================

    async def refresh(self) -> list[ContainerSummary]:
        """重新获取容器列表并同步统计会话"""
        try:
            containers = await asyncio.to_thread(self.client.containers.list, all=True)
        except Exception as e:
            logger.error("获取容器列表失败: %s", e)
            return list(self._containers.values())

        summaries = []
        for container in containers:
            try:
                summaries.append(summarize_container(container))
            except Exception as e:
                logger.debug("解析容器 %s 失败: %s", getattr(container, 'id', '?'), e)

        self._containers = {s.id: s for s in summaries}
        self.stats.sync(summaries)
        return summaries

    async def _refresh_loop(self) -> None:
        """定期刷新容器列表"""
        while True:
            try:
                await asyncio.sleep(self.settings.stats.refresh_interval)
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("刷新容器列表异常: %s", e)

    def list_containers(self) -> list[ContainerSummary]:
        return list(self._containers.values())

    def find_container(self, key: str) -> ContainerSummary | None:
        """按 ID、短 ID 或名称查找缓存中的容器"""
        if key in self._containers:
            return self._containers[key]
        for summary in self._containers.values():
            if summary.name == key or (len(key) >= 12 and summary.id.startswith(key)):
                return summary
        return None

    async def get_container(self, key: str) -> ContainerSummary | None:
        container = await self._get_container(key)
        if container is None:
            return None
        summary = summarize_container(container)
        self._containers[summary.id] = summary
        return summary

    # ==================== 创建 ====================

    async def _image_labels(self, image: str) -> dict[str, str]:
        """获取镜像标签（本地不存在时先拉取）"""
        try:
            obj = await asyncio.to_thread(self.client.images.get, image)
        except ImageNotFound:
            logger.info("拉取镜像: %s", image)
            obj = await asyncio.to_thread(self.client.images.pull, image)
        return (obj.attrs.get('Config') or {}).get('Labels') or {}

    async def create_container(self, spec: CreateContainerSpec) -> ContainerSummary:
        """创建（并可选启动）容器

        标签 = 镜像标签 + 调用方提供的基础标签 + 编码后的代理映射。

        Raises:
            ProxyValidationError: 代理映射校验失败
            RuntimeError: 创建或启动失败
        """
        errors = validate_proxies(spec.proxies)
        if errors:
            raise ProxyValidationError(errors)

        try:
            image_labels = await self._image_labels(spec.image)
        except ImageNotFound:
            raise RuntimeError(f"镜像不存在: {spec.image}")
        except APIError as e:
            raise RuntimeError(f"Docker API 错误: {e}")

        labels = apply_proxies_label({**image_labels, **spec.base_labels}, spec.proxies)

        kwargs: dict[str, Any] = {
            'image': spec.image,
            'detach': True,
            'environment': spec.env,
            'labels': labels,
        }
        if spec.name:
            kwargs['name'] = spec.name
        if spec.volumes:
            kwargs['volumes'] = spec.volumes
        if spec.restart_policy:
            kwargs['restart_policy'] = {'Name': spec.restart_policy}
        if spec.memory_limit:
            kwargs['mem_limit'] = spec.memory_limit

        if spec.host_network or wants_host_network(labels):
            kwargs['network_mode'] = 'host'
        else:
            network = spec.network or self.settings.docker.network
            await self._ensure_network(network)
            kwargs['network'] = network
            if spec.ports:
                kwargs['ports'] = spec.ports

        logger.info("正在创建容器: %s (镜像: %s)", spec.name or "<auto>", spec.image)

        try:
            container = await asyncio.to_thread(self.client.containers.create, **kwargs)
        except ImageNotFound:
            raise RuntimeError(f"镜像不存在: {spec.image}")
        except APIError as e:
            raise RuntimeError(f"Docker API 错误: {e}")

        if spec.start:
            try:
                await asyncio.to_thread(container.start)
            except Exception as e:
                logger.error("容器 %s 启动失败，删除已创建的容器: %s", container.short_id, e)
                try:
                    await asyncio.to_thread(container.remove, force=True)
                except Exception as cleanup_error:
                    raise RuntimeError(f"容器启动失败且清理失败: {cleanup_error}")
                raise RuntimeError(f"容器启动失败: {e}")

        await asyncio.to_thread(container.reload)
        summary = summarize_container(container)
        self._containers[summary.id] = summary
        self.stats.sync(self._containers.values())

        logger.info("容器已创建: %s (ID: %s)", summary.name, container.short_id)
        return summary

    # ==================== 生命周期操作 ====================

    async def _container_action(self, key: str, action: str, **kwargs: Any) -> bool:
        container = await self._get_container(key)
        if container is None:
            logger.error("容器不存在: %s", key)
            return False
        try:
            await asyncio.to_thread(getattr(container, action), **kwargs)
            await asyncio.to_thread(container.reload)
        except NotFound:
            # remove 之后 reload 必然失败
            if action != "remove":
                logger.error("容器 %s 在执行 %s 时消失", key, action)
                return False
        except Exception as e:
            logger.error("容器 %s 执行 %s 失败: %s", key, action, e)
            return False

        if action == "remove":
            self._containers.pop(container.id, None)
            self.stats.discard(container.id)
        else:
            summary = summarize_container(container)
            self._containers[summary.id] = summary
            self.stats.sync(self._containers.values())
        logger.info("容器 %s 已%s", key, action)
        return True

    async def start_container(self, key: str) -> bool:
        return await self._container_action(key, "start")

    async def stop_container(self, key: str, timeout: int = 10) -> bool:
        return await self._container_action(key, "stop", timeout=timeout)

    async def restart_container(self, key: str, timeout: int = 10) -> bool:
        return await self._container_action(key, "restart", timeout=timeout)

    async def remove_container(self, key: str, force: bool = True) -> bool:
        return await self._container_action(key, "remove", force=force)

    async def pause_container(self, key: str) -> bool:
        return await self._container_action(key, "pause")

    async def unpause_container(self, key: str) -> bool:
        return await self._container_action(key, "unpause")

    async def rename_container(self, key: str, new_name: str) -> bool:
        """重命名容器

        Raises:
            ValueError: 名称不合法
        """
        name = (new_name or "").strip().lstrip("/")
        if not CONTAINER_NAME_PATTERN.match(name):
            raise ValueError(f"容器名称不合法: '{new_name}'")
        return await self._container_action(key, "rename", name=name)

    async def commit_container(
        self,
        key: str,
        repository: str,
        tag: str | None = None,
        message: str | None = None,
        author: str | None = None,
        pause: bool = True,
        changes: list[str] | None = None,
    ) -> str | None:
        """将容器提交为新镜像

        Returns:
            新镜像 ID；容器不存在时返回 None

        Raises:
            ValueError: 未提供镜像名
            RuntimeError: 提交失败
        """
        repository = (repository or "").strip()
        if not repository:
            raise ValueError("镜像名称不能为空")

        container = await self._get_container(key)
        if container is None:
            return None

        kwargs: dict[str, Any] = {'repository': repository, 'pause': pause}
        if tag:
            kwargs['tag'] = tag
        if message:
            kwargs['message'] = message
        if author:
            kwargs['author'] = author
        if changes:
            kwargs['changes'] = changes

        try:
            image = await asyncio.to_thread(container.commit, **kwargs)
        except APIError as e:
            raise RuntimeError(f"Docker API 错误: {e}")

        logger.info("容器 %s 已提交为镜像 %s:%s", key, repository, tag or "latest")
        return image.id

    async def get_container_logs(self, key: str, tail: int = 100) -> str | None:
        """获取容器日志，容器不存在时返回 None"""
        container = await self._get_container(key)
        if container is None:
            return None
        try:
            logs = await asyncio.to_thread(container.logs, tail=tail, timestamps=True)
        except Exception as e:
            logger.error("获取容器 %s 日志失败: %s", key, e)
            return f"获取日志失败: {e}"
        if isinstance(logs, bytes):
            return logs.decode('utf-8', errors='replace')
        return str(logs)

    # ==================== README 与预填 ====================

    async def get_readme(self, key: str) -> str | None:
        """容器 README：优先标签内嵌，其次容器内文件"""
        container = await self._get_container(key)
        if container is None:
            return None

        labels = container.labels or {}
        embedded = read_embedded_readme(labels)
        if embedded:
            return embedded

        path = readme_path(labels, self.settings.docker.readme_path)
        try:
            result = await asyncio.to_thread(container.exec_run, ["cat", path])
        except Exception as e:
            logger.debug("读取容器 %s README 失败: %s", key, e)
            return None
        if result.exit_code != 0:
            logger.debug("容器 %s 中没有 README: %s", key, path)
            return None
        return result.output.decode('utf-8', errors='replace')

    async def image_prefill(self, ref: str) -> dict[str, Any] | None:
        """根据镜像元数据生成创建表单的预填值，镜像不存在时返回 None"""
        try:
            image = await asyncio.to_thread(self.client.images.get, ref)
        except ImageNotFound:
            return None
        except APIError as e:
            raise RuntimeError(f"Docker API 错误: {e}")

        config = image.attrs.get('Config') or {}
        labels = config.get('Labels') or {}

        env = {}
        for line in config.get('Env') or []:
            key, _, value = line.partition("=")
            env[key] = value

        ports = []
        for key in (config.get('ExposedPorts') or {}):
            port, _, proto = key.partition("/")
            ports.append({'container_port': port, 'protocol': (proto or 'tcp').lower()})

        readme = read_embedded_readme(labels)
        if not readme:
            readme = await self._image_readme_file(ref, readme_path(labels, self.settings.docker.readme_path))

        return {
            'ref': ref,
            'labels': labels,
            'proxies': decode_proxies(labels),
            'host_network': wants_host_network(labels),
            'env': env,
            'ports': ports,
            'volumes': list((config.get('Volumes') or {}).keys()),
            'readme': readme,
        }

    async def _image_readme_file(self, ref: str, path: str) -> str | None:
        """docker run --rm --entrypoint cat <ref> <path>"""
        try:
            output = await asyncio.to_thread(
                self.client.containers.run,
                ref,
                [path],
                entrypoint="cat",
                remove=True,
                network_mode="none",
            )
        except Exception as e:
            logger.debug("读取镜像 %s README 失败: %s", ref, e)
            return None
        if isinstance(output, bytes):
            return output.decode('utf-8', errors='replace')
        return None

    # ==================== 代理路由 ====================

    def find_proxy(self, slug: str) -> tuple[ContainerSummary, ProxyDescriptor] | None:
        """查找声明该 slug 的运行中容器"""
        for summary in self._containers.values():
            if not summary.is_running:
                continue
            for proxy in summary.proxies:
                if proxy.slug == slug:
                    return summary, proxy
        return None

    async def resolve_slug(self, slug: str) -> str | None:
        """slug -> 容器内部访问 URL

        优先使用端口映射（127.0.0.1:host_port），其次容器 IP，
        host 网络模式直接访问 127.0.0.1:port。
        """
        found = self.find_proxy(slug)
        if not found:
            return None
        summary, proxy = found

        container = await self._get_container(summary.id)
        if container is None:
            return None
        return container_url(container.attrs or {}, proxy.port, self.settings.docker.network)

    # ==================== 清理 ====================

    async def cleanup(self) -> None:
        """清理资源"""
        logger.info("清理 Docker 管理器...")

        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass

        await self.stats.close()

        if self._client:
            self._client.close()

        logger.info("Docker 管理器清理完成")


def container_url(attrs: dict[str, Any], port: str, preferred_network: str | None = None) -> str:
    """根据容器网络信息计算访问地址"""
    host_config = attrs.get('HostConfig') or {}
    if host_config.get('NetworkMode') == 'host':
        return f"http://127.0.0.1:{port}"

    settings = attrs.get('NetworkSettings') or {}
    bindings = (settings.get('Ports') or {}).get(f"{port}/tcp") or []
    if bindings and bindings[0].get('HostPort'):
        return f"http://127.0.0.1:{bindings[0]['HostPort']}"

    networks = settings.get('Networks') or {}
    if preferred_network in networks and networks[preferred_network].get('IPAddress'):
        return f"http://{networks[preferred_network]['IPAddress']}:{port}"
    for network in networks.values():
        ip = (network or {}).get('IPAddress')
        if ip:
            return f"http://{ip}:{port}"

    return f"http://127.0.0.1:{port}"
