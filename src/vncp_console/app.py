"""FastAPI 应用主模块"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from .config import ConfigManager
from .docker_manager import DockerManager
from .labels import (
    PROXIES_LABEL,
    ProxyValidationError,
    decode_proxies,
    encode_proxies,
    public_links,
    validate_proxies,
)
from .models import ContainerSummary, CreateContainerSpec, ProxyDescriptor
from .proxy import cleanup_proxy, get_proxy_client, get_websocket_proxy

logger = logging.getLogger(__name__)

# 无数据时的占位符
NO_DATA = "—"

# 这些路径段不会被当作代理 slug
RESERVED_SLUGS = {"api", "static", "docs", "redoc", "openapi.json"}

# 全局变量
_docker_manager: DockerManager | None = None


# ==================== Pydantic 模型 ====================

class ProxyRow(BaseModel):
    """代理映射（表单行）"""
    slug: str = ""
    port: str | int = ""
    nginx_block_text: str | None = None

    def to_descriptor(self) -> ProxyDescriptor:
        return ProxyDescriptor(
            slug=self.slug,
            port=str(self.port).strip(),
            nginx_block_text=self.nginx_block_text,
        )

    @classmethod
    def from_descriptor(cls, descriptor: ProxyDescriptor) -> "ProxyRow":
        return cls(
            slug=descriptor.slug,
            port=descriptor.port,
            nginx_block_text=descriptor.nginx_block_text,
        )


class CreateContainerRequest(BaseModel):
    """创建容器请求"""
    image: str
    name: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    ports: dict[str, int | None] = Field(default_factory=dict)
    volumes: dict[str, dict[str, str]] = Field(default_factory=dict)
    proxies: list[ProxyRow] = Field(default_factory=list)
    base_labels: dict[str, str] = Field(default_factory=dict)
    host_network: bool = False
    network: str | None = None
    restart_policy: str | None = None
    memory_limit: str | None = None
    start: bool = True

    def to_spec(self) -> CreateContainerSpec:
        return CreateContainerSpec(
            image=self.image,
            name=self.name,
            env=self.env,
            ports=self.ports,
            volumes=self.volumes,
            proxies=[p.to_descriptor() for p in self.proxies],
            base_labels=self.base_labels,
            host_network=self.host_network,
            network=self.network,
            restart_policy=self.restart_policy,
            memory_limit=self.memory_limit,
            start=self.start,
        )


class ProxyLink(BaseModel):
    slug: str
    url: str


class ContainerResponse(BaseModel):
    """容器响应"""
    id: str
    name: str
    status: str
    image: str
    health_status: str = "unknown"
    proxies: list[ProxyRow] = Field(default_factory=list)
    links: list[ProxyLink] = Field(default_factory=list)
    cpu: str = NO_DATA
    memory: str = NO_DATA
    stats_mode: str = "idle"


class StatsResponse(BaseModel):
    container_id: str
    mode: str
    cpu: str
    memory: str


class EncodeProxiesRequest(BaseModel):
    proxies: list[ProxyRow] = Field(default_factory=list)


class DecodeProxiesRequest(BaseModel):
    labels: dict[str, str] = Field(default_factory=dict)


class RenameContainerRequest(BaseModel):
    name: str


class CommitContainerRequest(BaseModel):
    """提交容器为镜像"""
    repository: str
    tag: str | None = None
    message: str | None = None
    author: str | None = None
    pause: bool = True
    changes: list[str] = Field(default_factory=list)


# ==================== 生命周期 ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    global _docker_manager

    logger.info("VNCP Console 启动中...")

    config_manager = ConfigManager(config_dir=os.getenv("CONFIG_DIR"))
    _docker_manager = DockerManager(config_manager.settings)
    await _docker_manager.initialize()

    logger.info("VNCP Console 启动完成")

    yield

    logger.info("VNCP Console 关闭中...")

    if _docker_manager:
        await _docker_manager.cleanup()
        _docker_manager = None

    await cleanup_proxy()

    logger.info("VNCP Console 已关闭")


# ==================== 辅助函数 ====================

def public_origin(request: Request) -> str:
    """页面来源（协议 + 主机名，不含端口）"""
    hostname = request.url.hostname or "localhost"
    if ":" in hostname:
        hostname = f"[{hostname}]"
    return f"{request.url.scheme}://{hostname}"


def _manager() -> DockerManager:
    if not _docker_manager:
        raise HTTPException(status_code=503, detail="服务未就绪")
    return _docker_manager


def _stats_of(manager: DockerManager, summary: ContainerSummary) -> StatsResponse:
    session = manager.stats.get(summary.id) if summary.is_running else None
    if session is None:
        return StatsResponse(container_id=summary.id, mode="idle", cpu=NO_DATA, memory=NO_DATA)
    return StatsResponse(
        container_id=summary.id,
        mode=session.mode.value,
        cpu=session.cpu_text or NO_DATA,
        memory=session.mem_text or NO_DATA,
    )


def websocket_target(internal_url: str, path: str, query: str = "") -> str:
    """http://host:port + 子路径 -> ws://host:port/子路径?query"""
    url = internal_url.replace("http://", "ws://", 1).replace("https://", "wss://", 1)
    url = f"{url.rstrip('/')}/{path}"
    if query:
        url += f"?{query}"
    return url


def _container_response(
    manager: DockerManager,
    summary: ContainerSummary,
    origin: str,
) -> ContainerResponse:
    stats = _stats_of(manager, summary)
    return ContainerResponse(
        id=summary.id,
        name=summary.name,
        status=summary.status,
        image=summary.image,
        health_status=summary.health_status,
        proxies=[ProxyRow.from_descriptor(p) for p in summary.proxies],
        links=[ProxyLink(**link) for link in public_links(summary.proxies, origin)],
        cpu=stats.cpu,
        memory=stats.memory,
        stats_mode=stats.mode,
    )


# ==================== 创建应用 ====================

def create_app() -> FastAPI:
    """创建 FastAPI 应用"""
    app = FastAPI(
        title="VNCP Console",
        description="本地容器引擎的管理控制台与按 slug 的反向代理",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS 中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    _setup_static_files(app)
    # slug 代理路由必须最后注册
    _register_proxy_routes(app)

    return app


def _setup_static_files(app: FastAPI) -> None:
    """设置静态文件"""
    possible_paths = [
        Path(__file__).parent.parent.parent / "web",  # 开发环境
        Path(__file__).parent / "web",  # 打包环境
        Path("./web"),  # 当前目录
    ]

    web_dir = None
    for path in possible_paths:
        if path.exists():
            web_dir = path
            break

    if web_dir:
        logger.info("静态文件目录: %s", web_dir)
        app.mount("/static", StaticFiles(directory=web_dir), name="static")


def _register_routes(app: FastAPI) -> None:
    """注册 API 路由"""

    @app.get("/", include_in_schema=False)
    async def root():
        """重定向到控制台页面"""
        return RedirectResponse(url="/static/index.html")

    @app.get("/api/health")
    async def health_check():
        """健康检查端点"""
        return {"status": "ok", "service": "vncp-console"}

    # ==================== 容器 ====================

    @app.get("/api/containers")
    async def list_containers(request: Request) -> list[ContainerResponse]:
        """列出所有容器（含实时统计与代理链接）"""
        manager = _manager()
        origin = public_origin(request)
        return [
            _container_response(manager, summary, origin)
            for summary in manager.list_containers()
        ]

    @app.get("/api/containers/{key}")
    async def get_container(key: str, request: Request) -> ContainerResponse:
        manager = _manager()
        summary = await manager.get_container(key)
        if not summary:
            raise HTTPException(status_code=404, detail=f"容器 '{key}' 不存在")
        return _container_response(manager, summary, public_origin(request))

    @app.get("/api/containers/{key}/stats")
    async def get_container_stats(key: str) -> StatsResponse:
        """获取容器当前 CPU / 内存显示值"""
        manager = _manager()
        summary = manager.find_container(key) or await manager.get_container(key)
        if not summary:
            raise HTTPException(status_code=404, detail=f"容器 '{key}' 不存在")
        return _stats_of(manager, summary)

    @app.post("/api/containers", status_code=201)
    async def create_container(req: CreateContainerRequest, request: Request) -> ContainerResponse:
        """创建容器"""
        manager = _manager()
        try:
            summary = await manager.create_container(req.to_spec())
        except ProxyValidationError as e:
            return JSONResponse(
                status_code=422,
                content={"detail": str(e), "proxies": e.rows},
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except RuntimeError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return _container_response(manager, summary, public_origin(request))

    @app.delete("/api/containers/{key}")
    async def delete_container(key: str):
        """删除容器"""
        manager = _manager()
        logger.info("收到删除容器请求: %s", key)
        if not await manager.remove_container(key):
            raise HTTPException(status_code=500, detail=f"删除容器 '{key}' 失败")
        return {"success": True, "message": f"容器 '{key}' 已删除"}

    @app.post("/api/containers/{key}/start")
    async def start_container(key: str):
        """启动容器"""
        if not await _manager().start_container(key):
            raise HTTPException(status_code=500, detail="启动失败")
        return {"success": True, "message": f"容器 '{key}' 已启动"}

    @app.post("/api/containers/{key}/stop")
    async def stop_container(key: str, force: bool = False):
        """停止容器（force 时不等待）"""
        if not await _manager().stop_container(key, timeout=0 if force else 10):
            raise HTTPException(status_code=500, detail="停止失败")
        return {"success": True, "message": f"容器 '{key}' 已停止"}

    @app.post("/api/containers/{key}/restart")
    async def restart_container(key: str, force: bool = False):
        """重启容器（force 时不等待）"""
        if not await _manager().restart_container(key, timeout=0 if force else 10):
            raise HTTPException(status_code=500, detail="重启失败")
        return {"success": True, "message": f"容器 '{key}' 已重启"}

    @app.post("/api/containers/{key}/pause")
    async def pause_container(key: str):
        """暂停容器"""
        if not await _manager().pause_container(key):
            raise HTTPException(status_code=500, detail="暂停失败")
        return {"success": True, "message": f"容器 '{key}' 已暂停"}

    @app.post("/api/containers/{key}/unpause")
    async def unpause_container(key: str):
        """恢复容器"""
        if not await _manager().unpause_container(key):
            raise HTTPException(status_code=500, detail="恢复失败")
        return {"success": True, "message": f"容器 '{key}' 已恢复"}

    @app.post("/api/containers/{key}/rename")
    async def rename_container(key: str, req: RenameContainerRequest):
        """重命名容器"""
        try:
            ok = await _manager().rename_container(key, req.name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not ok:
            raise HTTPException(status_code=500, detail="重命名失败")
        return {"success": True, "message": f"容器 '{key}' 已重命名为 '{req.name}'"}

    @app.post("/api/containers/{key}/commit", status_code=201)
    async def commit_container(key: str, req: CommitContainerRequest):
        """将容器提交为镜像"""
        try:
            image_id = await _manager().commit_container(
                key,
                req.repository,
                tag=req.tag,
                message=req.message,
                author=req.author,
                pause=req.pause,
                changes=req.changes,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except RuntimeError as e:
            raise HTTPException(status_code=500, detail=str(e))
        if image_id is None:
            raise HTTPException(status_code=404, detail=f"容器 '{key}' 不存在")
        return {"success": True, "image_id": image_id}

    @app.get("/api/containers/{key}/logs")
    async def get_container_logs(key: str, tail: int = 100):
        """获取容器日志"""
        logs = await _manager().get_container_logs(key, tail=tail)
        if logs is None:
            raise HTTPException(status_code=404, detail=f"容器 '{key}' 不存在")
        return {"logs": logs}

    @app.get("/api/containers/{key}/readme")
    async def get_container_readme(key: str):
        """获取容器 README"""
        readme = await _manager().get_readme(key)
        if not readme:
            raise HTTPException(status_code=404, detail="No README found.")
        return {"readme": readme}

    # ==================== 镜像 ====================

    @app.get("/api/images/prefill")
    async def image_prefill(ref: str) -> dict[str, Any]:
        """根据镜像标签生成创建表单预填值"""
        try:
            prefill = await _manager().image_prefill(ref)
        except RuntimeError as e:
            raise HTTPException(status_code=500, detail=str(e))
        if prefill is None:
            raise HTTPException(status_code=404, detail=f"镜像 '{ref}' 不存在")
        prefill['proxies'] = [ProxyRow.from_descriptor(p).model_dump() for p in prefill['proxies']]
        return prefill

    # ==================== 代理标签编解码 ====================

    @app.post("/api/proxies/encode")
    async def encode_proxy_rows(req: EncodeProxiesRequest):
        """将表单行编码为标签值"""
        descriptors = [p.to_descriptor() for p in req.proxies]
        return {
            "key": PROXIES_LABEL,
            "value": encode_proxies(descriptors),
            "errors": validate_proxies(descriptors),
        }

    @app.post("/api/proxies/decode")
    async def decode_proxy_labels(req: DecodeProxiesRequest, request: Request):
        """从标签解析代理映射"""
        descriptors = decode_proxies(req.labels)
        return {
            "proxies": [ProxyRow.from_descriptor(p) for p in descriptors],
            "links": public_links(descriptors, public_origin(request)),
        }


def _register_proxy_routes(app: FastAPI) -> None:
    """注册 /{slug} 反向代理路由"""

    methods = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]

    async def _target(slug: str) -> str:
        if slug in RESERVED_SLUGS:
            raise HTTPException(status_code=404, detail="Not Found")
        internal_url = await _manager().resolve_slug(slug)
        if not internal_url:
            raise HTTPException(status_code=404, detail=f"代理 '{slug}' 不存在")
        return internal_url

    @app.websocket("/{slug}/{path:path}")
    async def proxy_slug_websocket(websocket: WebSocket, slug: str, path: str):
        """代理任意子路径上的 WebSocket 连接"""
        if not _docker_manager:
            await websocket.close(code=1011, reason="服务未就绪")
            return
        if slug in RESERVED_SLUGS:
            await websocket.close(code=1008, reason="Not Found")
            return
        internal_url = await _docker_manager.resolve_slug(slug)
        if not internal_url:
            await websocket.close(code=1008, reason=f"代理 '{slug}' 不存在")
            return

        ws_url = websocket_target(internal_url, path, websocket.url.query)
        await get_websocket_proxy().proxy_websocket(websocket, ws_url)

    @app.api_route("/{slug}/{path:path}", methods=methods, include_in_schema=False)
    async def proxy_slug_request(slug: str, path: str, request: Request):
        """代理请求到声明该 slug 的容器"""
        internal_url = await _target(slug)
        return await get_proxy_client().proxy_request(request, slug, f"{internal_url}/{path}")

    @app.api_route("/{slug}", methods=methods, include_in_schema=False)
    async def proxy_slug_root(slug: str, request: Request):
        """代理根请求"""
        internal_url = await _target(slug)
        return await get_proxy_client().proxy_request(request, slug, f"{internal_url}/")


# 创建应用实例
app = create_app()
