#!/usr/bin/env python3
"""
包仓库查询 - 基于安全 HTTP 客户端的 npm 元数据读取

URL 只由已验证的包名在内部拼接，调用方不能传入任意地址。
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

from core.async_http_client import SecureHttpClient, secure_http_client
from core.config import REGISTRY_HOST
from core.exceptions import GatewayError, RegistryDataError
from core.security.input_validator import InputValidator, default_validator

logger = logging.getLogger(__name__)

REGISTRY_URL = f"https://{REGISTRY_HOST}"


def package_url(name: str, validator: Optional[InputValidator] = None) -> str:
    """验证包名并拼接元数据地址（scope 中的 / 被编码）"""
    sanitized = (validator if validator is not None else default_validator).sanitize_package_name(name)
    return f"{REGISTRY_URL}/{quote(sanitized, safe='@')}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """解析仓库中的 ISO 时间，无法解析返回 None"""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def latest_version(metadata: Dict[str, Any]) -> Optional[str]:
    """dist-tags.latest，缺失时取 versions 中最后发布的版本"""
    dist_tags = metadata.get("dist-tags")
    if isinstance(dist_tags, dict) and isinstance(dist_tags.get("latest"), str):
        return dist_tags["latest"]
    versions = metadata.get("versions")
    if isinstance(versions, dict) and versions:
        return list(versions)[-1]
    return None


async def get_package_info(name: str, client: Optional[SecureHttpClient] = None) -> Dict[str, Any]:
    """
    获取包元数据

    Raises:
        ValidationError / PolicyViolation: 包名不合法
        RegistryDataError: 响应不是对象
    """
    client = client or secure_http_client
    data = await client.get_json(package_url(name, client.validator))
    if not isinstance(data, dict):
        raise RegistryDataError("Invalid package metadata received")
    return data


async def get_package_last_published(name: str, client: Optional[SecureHttpClient] = None) -> datetime:
    """
    获取最新版本的发布时间

    Raises:
        RegistryDataError: 缺少 versions/time 或最新版本没有发布时间
    """
    info = await get_package_info(name, client)

    versions = info.get("versions")
    times = info.get("time")
    if not isinstance(versions, dict) or not isinstance(times, dict):
        raise RegistryDataError(f"Could not fetch package info for {name}: invalid package data structure")
    if not versions:
        raise RegistryDataError(f"Could not fetch package info for {name}: no versions found")

    version = latest_version(info)
    published = parse_timestamp(times.get(version))
    if published is None:
        raise RegistryDataError(f"Could not fetch package info for {name}: no publish time for latest version")
    return published


def _repository_url(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        url = value.get("url")
        return url if isinstance(url, str) else None
    if isinstance(value, str):
        return value
    return None


async def get_detailed_package_info(name: str, client: Optional[SecureHttpClient] = None) -> Dict[str, Any]:
    """
    获取包的详细信息，元数据不完整时使用默认值，失败时不抛出异常

    Returns:
        description, keywords, deprecated, repository, homepage, license,
        version, published_at；失败时附带 error
    """
    try:
        info = await get_package_info(name, client)
    except GatewayError as e:
        logger.debug(f"获取包信息失败: {e.code}")
        return {
            "description": "Error fetching package info",
            "keywords": [],
            "deprecated": False,
            "error": e.message,
        }

    version = latest_version(info)
    versions = info.get("versions") if isinstance(info.get("versions"), dict) else {}
    version_info = versions.get(version) if isinstance(versions.get(version), dict) else {}
    times = info.get("time") if isinstance(info.get("time"), dict) else {}

    keywords = info.get("keywords") or version_info.get("keywords") or []
    return {
        "description": info.get("description") or version_info.get("description") or "No description available",
        "keywords": list(keywords) if isinstance(keywords, list) else [],
        "deprecated": version_info.get("deprecated") or False,
        "repository": _repository_url(info.get("repository")) or _repository_url(version_info.get("repository")),
        "homepage": info.get("homepage") or version_info.get("homepage"),
        "license": info.get("license") or version_info.get("license"),
        "version": version,
        "published_at": times.get(version),
    }
