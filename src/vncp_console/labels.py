"""容器标签编解码模块

容器标签是反向代理映射与内嵌 README 的唯一数据来源：

- ``io.versanode.vncp.proxies``: JSON 数组 ``[{slug, port, nginx_block_b64}]``，
  兼容旧版对象格式 ``{slug: port | {port, nginx_block}}``
- ``io.versanode.vncp.readme.*``: base64 编码的 README，可拆分到多个标签

标签内容可被外部任意修改，因此这里的所有解析失败都降级为“无数据”，不抛异常。
"""

import base64
import binascii
import json
import logging
import re
from typing import Any, Iterable
from urllib.parse import quote

from .models import ProxyDescriptor

logger = logging.getLogger(__name__)

VNCP_PREFIX = "io.versanode.vncp"
PROXIES_LABEL = f"{VNCP_PREFIX}.proxies"
README_PREFIX = f"{VNCP_PREFIX}.readme"
README_PATH_LABEL = f"{README_PREFIX}.path"
README_ENCODING_LABEL = f"{README_PREFIX}.encoding"
README_SINGLE_LABEL = f"{README_PREFIX}.single"
README_PARTS_LABEL = f"{README_PREFIX}.parts"
NETWORK_LABEL = f"{VNCP_PREFIX}.network"
HOST_NETWORK_LABEL = f"{VNCP_PREFIX}.host_network"

DEFAULT_README_PATH = "/usr/share/versanode/README.md"

# 单个标签值的安全长度（引擎对标签总大小有限制）
README_CHUNK_SIZE = 60000

SLUG_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
SLUG_MAX_LENGTH = 64

# 编码时丢弃没有 Nginx 片段的映射；校验时同样要求片段非空
BLOCK_REQUIRED = True

_KNOWN_KEYS = {"slug", "port", "nginx_block", "nginx_block_b64"}


# ==================== base64 ====================

def utf8_to_b64(text: str) -> str:
    """UTF-8 文本 -> base64"""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def b64_to_utf8(value: str) -> str:
    """base64 -> UTF-8 文本

    Raises:
        ValueError: base64 格式错误
    """
    try:
        raw = base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"base64 解码失败: {e}") from e
    return raw.decode("utf-8", errors="replace")


def escape_block(text: str) -> str:
    """保存前将 $ 转义为 $$"""
    return text.replace("$", "$$")


def unescape_block(text: str) -> str:
    """读取时将 $$ 还原为 $"""
    return text.replace("$$", "$")


# ==================== 代理映射 ====================

def _to_port(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _block_from_spec(spec: dict[str, Any], slug: str) -> str | None:
    """从映射对象中取出 Nginx 片段（优先 nginx_block_b64）"""
    b64 = spec.get("nginx_block_b64")
    if isinstance(b64, str) and b64.strip():
        try:
            return unescape_block(b64_to_utf8(b64))
        except ValueError as e:
            logger.warning("代理 '%s' 的 nginx_block_b64 无法解码: %s", slug, e)
    plain = spec.get("nginx_block")
    if isinstance(plain, str):
        return unescape_block(plain)
    return None


def _descriptor(slug: str, port: str, spec: dict[str, Any]) -> ProxyDescriptor:
    return ProxyDescriptor(
        slug=slug,
        port=port,
        nginx_block_text=_block_from_spec(spec, slug),
        extra={k: v for k, v in spec.items() if k not in _KNOWN_KEYS},
    )


def decode_proxies(labels: dict[str, str] | None) -> list[ProxyDescriptor]:
    """从容器标签解析代理映射

    Args:
        labels: 容器（或镜像）的完整标签

    Returns:
        代理映射列表；标签缺失或格式错误时返回空列表
    """
    raw = (labels or {}).get(PROXIES_LABEL)
    if not isinstance(raw, str) or not raw.strip():
        return []

    try:
        parsed = json.loads(raw.strip())
    except ValueError as e:
        logger.warning("代理标签不是合法 JSON: %s", e)
        return []

    result: list[ProxyDescriptor] = []

    if isinstance(parsed, list):
        for item in parsed:
            if not isinstance(item, dict):
                continue
            slug = str(item.get("slug") or "").strip()
            if not slug:
                continue
            port = _to_port(item.get("port"))
            if not port:
                continue
            result.append(_descriptor(slug, port, item))

    elif isinstance(parsed, dict):
        for key, spec in parsed.items():
            slug = str(key or "").strip()
            if not slug:
                continue
            if isinstance(spec, (str, int, float)) and not isinstance(spec, bool):
                port = _to_port(spec)
                if port:
                    result.append(ProxyDescriptor(slug=slug, port=port))
            elif isinstance(spec, dict):
                port = _to_port(spec.get("port"))
                if port:
                    result.append(_descriptor(slug, port, spec))

    else:
        logger.warning("代理标签格式不支持: %s", type(parsed).__name__)

    return _dedupe(result)


def _dedupe(descriptors: Iterable[ProxyDescriptor]) -> list[ProxyDescriptor]:
    seen: set[str] = set()
    out = []
    for d in descriptors:
        if d.slug in seen:
            continue
        seen.add(d.slug)
        out.append(d)
    return out


def encode_proxies(descriptors: Iterable[ProxyDescriptor]) -> str | None:
    """将代理映射序列化为标签值

    Returns:
        JSON 数组字符串；没有有效映射时返回 None（表示不写该标签）
    """
    entries = []
    seen: set[str] = set()
    for d in descriptors:
        slug = (d.slug or "").strip()
        port = _to_port(d.port)
        block = (d.nginx_block_text or "").strip()
        if not slug or not port:
            continue
        if BLOCK_REQUIRED and not block:
            continue
        if slug in seen:
            continue
        seen.add(slug)

        entry: dict[str, str] = {"slug": slug, "port": port}
        if block:
            entry["nginx_block_b64"] = utf8_to_b64(escape_block(block))
        entries.append(entry)

    if not entries:
        return None
    return json.dumps(entries, separators=(",", ":"), ensure_ascii=False)


def apply_proxies_label(
    labels: dict[str, str] | None,
    descriptors: Iterable[ProxyDescriptor],
) -> dict[str, str]:
    """返回写入（或移除）代理标签后的标签副本"""
    merged = dict(labels or {})
    encoded = encode_proxies(descriptors)
    if encoded is None:
        merged.pop(PROXIES_LABEL, None)
    else:
        merged[PROXIES_LABEL] = encoded
    return merged


def public_links(descriptors: Iterable[ProxyDescriptor], origin: str) -> list[dict[str, str]]:
    """生成代理的外部访问地址 {origin}/{slug}"""
    base = origin.rstrip("/")
    links = []
    for d in descriptors:
        slug = (d.slug or "").lstrip("/")
        if not slug:
            continue
        links.append({"slug": d.slug, "url": f"{base}/{quote(slug, safe='')}"})
    return links


# ==================== 校验 ====================

class ProxyValidationError(ValueError):
    """代理映射校验失败，rows 为逐行错误信息"""

    def __init__(self, rows: list[dict[str, str | None]]):
        super().__init__("代理映射校验失败")
        self.rows = rows


def validate_slug(value: Any) -> str | None:
    """校验 slug，返回错误信息或 None"""
    if value is None or str(value).strip() == "":
        return "Slug is required"
    slug = str(value).strip()
    if not SLUG_PATTERN.match(slug):
        return "Use lowercase letters, digits, and dashes (must start/end with alphanumeric)"
    if len(slug) > SLUG_MAX_LENGTH:
        return "Slug is too long"
    return None


def validate_port(value: Any) -> str | None:
    """校验容器端口"""
    port = _to_port(value)
    if not port:
        return "Port is required"
    if not (port.isascii() and port.isdecimal()):
        return "Port must be a number"
    if not 1 <= int(port) <= 65535:
        return "Port must be between 1 and 65535"
    return None


def validate_block(value: Any) -> str | None:
    if BLOCK_REQUIRED and not str(value or "").strip():
        return "Nginx block is required"
    return None


def validate_proxies(descriptors: list[ProxyDescriptor]) -> list[dict[str, str | None]] | None:
    """逐行校验代理映射

    Returns:
        每行的 {slug, port, nginx_block} 错误信息；全部通过时返回 None
    """
    rows = []
    seen: set[str] = set()
    for d in descriptors:
        row = {
            "slug": validate_slug(d.slug),
            "port": validate_port(d.port),
            "nginx_block": validate_block(d.nginx_block_text),
        }
        slug = (d.slug or "").strip()
        if row["slug"] is None:
            if slug in seen:
                row["slug"] = "Slug is already used"
            seen.add(slug)
        rows.append(row)

    if any(any(msg for msg in row.values()) for row in rows):
        return rows
    return None


# ==================== README ====================

def read_embedded_readme(labels: dict[str, str] | None) -> str | None:
    """读取标签中内嵌的 README

    Returns:
        README 文本；未内嵌或缺少分片时返回 None
    """
    labels = labels or {}
    encoding = labels.get(README_ENCODING_LABEL) or ""
    if not encoding.startswith("b64"):
        return None

    single = labels.get(README_SINGLE_LABEL)
    if single:
        return _decode_readme(single)

    try:
        parts = int(labels.get(README_PARTS_LABEL) or "0")
    except ValueError:
        parts = 0
    if parts <= 0:
        return None

    chunks = []
    for i in range(parts):
        chunk = labels.get(f"{README_PREFIX}.{i}")
        if not isinstance(chunk, str):
            logger.debug("README 分片缺失: %d/%d", i, parts)
            return None
        chunks.append(chunk)
    return _decode_readme("".join(chunks))


def _decode_readme(value: str) -> str:
    try:
        return b64_to_utf8(value)
    except ValueError as e:
        logger.warning("README base64 解码失败: %s", e)
        return ""


def encode_embedded_readme(text: str, chunk_size: int = README_CHUNK_SIZE) -> dict[str, str]:
    """将 README 编码为标签（过长时拆分为多个分片）"""
    encoded = utf8_to_b64(text)
    if len(encoded) <= chunk_size:
        return {
            README_ENCODING_LABEL: "b64",
            README_SINGLE_LABEL: encoded,
        }

    labels = {README_ENCODING_LABEL: "b64-chunked"}
    chunks = [encoded[i:i + chunk_size] for i in range(0, len(encoded), chunk_size)]
    for i, chunk in enumerate(chunks):
        labels[f"{README_PREFIX}.{i}"] = chunk
    labels[README_PARTS_LABEL] = str(len(chunks))
    return labels


def readme_path(labels: dict[str, str] | None, default: str = DEFAULT_README_PATH) -> str:
    """容器内 README 路径（无内嵌 README 时使用）"""
    return (labels or {}).get(README_PATH_LABEL) or default


def wants_host_network(labels: dict[str, str] | None) -> bool:
    """镜像是否要求使用 host 网络"""
    labels = labels or {}
    network = str(labels.get(NETWORK_LABEL) or "").strip().lower()
    host_network = str(labels.get(HOST_NETWORK_LABEL) or "").strip().lower()
    return network == "host" or host_network in ("true", "1", "yes")
