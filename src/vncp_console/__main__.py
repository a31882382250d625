"""VNCP Console 入口模块"""

import logging
import os
import socket
import sys

import uvicorn

from .config import ConfigManager


def setup_logging() -> None:
    """配置日志"""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # 降低第三方库日志级别
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def is_port_in_use(port: int, host: str = "0.0.0.0") -> bool:
    """检查端口是否被占用"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return False
        except OSError:
            return True


def main() -> None:
    """主入口函数"""
    setup_logging()

    logger = logging.getLogger(__name__)

    settings = ConfigManager().settings
    host = settings.server.host
    port = settings.server.port

    if is_port_in_use(port, host):
        logger.error("端口 %d 已被占用，请修改配置中的 server.port 或设置 PORT", port)
        sys.exit(1)

    logger.info("=" * 50)
    logger.info("VNCP Console 启动")
    logger.info("=" * 50)
    logger.info("监听地址: http://%s:%d", host, port)
    logger.info("控制台: http://%s:%d/", host, port)
    logger.info("API 文档: http://%s:%d/docs", host, port)
    logger.info("容器代理: http://%s:%d/{slug}", host, port)
    logger.info("=" * 50)

    uvicorn.run(
        "vncp_console.app:app",
        host=host,
        port=port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
