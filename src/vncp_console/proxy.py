"""反向代理模块

将 ``/{slug}/...`` 的 HTTP/SSE/WebSocket 请求透传到声明该 slug 的容器端口。
"""

import asyncio
import json
import logging
from typing import AsyncGenerator

import httpx
import websockets
from fastapi import Request, Response, WebSocket, WebSocketDisconnect
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

logger = logging.getLogger(__name__)

# HTTP 客户端配置
DEFAULT_TIMEOUT = 300.0
DEFAULT_CONNECT_TIMEOUT = 10.0

HOP_BY_HOP = {
    'connection', 'keep-alive', 'proxy-authenticate',
    'proxy-authorization', 'te', 'trailers', 'transfer-encoding',
    'upgrade', 'host',
}


def _error_response(message: str, status_code: int) -> Response:
    return Response(
        content=json.dumps({"error": message}, ensure_ascii=False),
        status_code=status_code,
        media_type="application/json",
    )


def forward_headers(request: Request, slug: str) -> dict[str, str]:
    """过滤 hop-by-hop 头并附加 X-Forwarded-*"""
    headers = {
        k: v for k, v in request.headers.items()
        if k.lower() not in HOP_BY_HOP
    }
    if request.client:
        headers['x-forwarded-for'] = request.client.host
    headers['x-forwarded-host'] = request.headers.get('host', '')
    headers['x-forwarded-proto'] = request.url.scheme
    headers['x-forwarded-prefix'] = f"/{slug}"
    return headers


class ProxyClient:
    """代理客户端"""

    def __init__(self):
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """获取 HTTP 客户端（延迟初始化）"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=DEFAULT_CONNECT_TIMEOUT,
                    read=DEFAULT_TIMEOUT,
                    write=DEFAULT_TIMEOUT,
                    pool=DEFAULT_TIMEOUT,
                ),
                follow_redirects=False,
            )
        return self._client

    async def close(self) -> None:
        """关闭客户端"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def proxy_request(
        self,
        request: Request,
        slug: str,
        target_url: str,
    ) -> Response:
        """代理 HTTP 请求

        Args:
            request: FastAPI 请求对象
            slug: 路由 slug
            target_url: 目标 URL（不含查询参数）

        Returns:
            Response: 普通响应或 SSE 流式响应
        """
        full_url = target_url
        if request.query_params:
            full_url += f"?{request.query_params}"

        body = await request.body()

        logger.debug("代理请求: %s %s -> %s", request.method, request.url.path, full_url)

        try:
            upstream = self.client.build_request(
                method=request.method,
                url=full_url,
                headers=forward_headers(request, slug),
                content=body,
            )
            response = await self.client.send(upstream, stream=True)
        except httpx.ConnectError as e:
            logger.error("连接失败: %s -> %s", full_url, e)
            return _error_response(f"容器连接失败: {e}", 502)
        except httpx.TimeoutException:
            logger.error("请求超时: %s", full_url)
            return _error_response("请求超时", 504)
        except Exception as e:
            logger.exception("代理请求失败: %s", full_url)
            return _error_response(f"代理错误: {e}", 500)

        content_type = response.headers.get('content-type', '')
        if 'text/event-stream' in content_type:
            return self._handle_sse_response(response)

        try:
            content = await response.aread()
        finally:
            await response.aclose()

        response_headers = {
            k: v for k, v in response.headers.items()
            if k.lower() not in HOP_BY_HOP
            and k.lower() not in ('content-encoding', 'content-length')
        }
        return Response(
            content=content,
            status_code=response.status_code,
            headers=response_headers,
        )

    def _handle_sse_response(self, response: httpx.Response) -> StreamingResponse:
        """处理 SSE 响应"""
        async def generate() -> AsyncGenerator[bytes, None]:
            async for chunk in response.aiter_bytes():
                yield chunk

        headers = {
            k: v for k, v in response.headers.items()
            if k.lower() not in {'transfer-encoding', 'content-encoding', 'content-length'}
        }
        return StreamingResponse(
            generate(),
            status_code=response.status_code,
            headers=headers,
            media_type="text/event-stream",
            background=BackgroundTask(response.aclose),
        )


class WebSocketProxy:
    """WebSocket 代理"""

    async def proxy_websocket(
        self,
        websocket: WebSocket,
        target_url: str,
    ) -> None:
        """代理 WebSocket 连接

        Args:
            websocket: FastAPI WebSocket 对象
            target_url: 目标 WebSocket URL (ws://...)
        """
        await websocket.accept()

        logger.debug("WebSocket 代理: -> %s", target_url)

        try:
            async with websockets.connect(target_url) as target_ws:
                async def forward_to_target():
                    try:
                        while True:
                            message = await websocket.receive()
                            if message.get('type') == 'websocket.disconnect':
                                break
                            if message.get('text') is not None:
                                await target_ws.send(message['text'])
                            elif message.get('bytes') is not None:
                                await target_ws.send(message['bytes'])
                    except WebSocketDisconnect:
                        pass
                    except Exception as e:
                        logger.debug("Forward to target error: %s", e)
                    finally:
                        await target_ws.close()

                async def forward_to_client():
                    try:
                        async for message in target_ws:
                            if isinstance(message, str):
                                await websocket.send_text(message)
                            else:
                                await websocket.send_bytes(message)
                    except Exception as e:
                        logger.debug("Forward to client error: %s", e)

                await asyncio.gather(
                    forward_to_target(),
                    forward_to_client(),
                    return_exceptions=True,
                )

        except WebSocketDisconnect:
            logger.debug("WebSocket 客户端断开")
        except Exception as e:
            logger.error("WebSocket 代理错误: %s", e)
            try:
                await websocket.close(code=1011, reason=str(e)[:120])
            except Exception as close_error:
                logger.debug("关闭 WebSocket 失败: %s", close_error)


# 全局代理客户端
_proxy_client: ProxyClient | None = None
_websocket_proxy: WebSocketProxy | None = None


def get_proxy_client() -> ProxyClient:
    """获取代理客户端单例"""
    global _proxy_client
    if _proxy_client is None:
        _proxy_client = ProxyClient()
    return _proxy_client


def get_websocket_proxy() -> WebSocketProxy:
    """获取 WebSocket 代理单例"""
    global _websocket_proxy
    if _websocket_proxy is None:
        _websocket_proxy = WebSocketProxy()
    return _websocket_proxy


async def cleanup_proxy() -> None:
    """清理代理资源"""
    global _proxy_client
    if _proxy_client:
        await _proxy_client.close()
        _proxy_client = None
