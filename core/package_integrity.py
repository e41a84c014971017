#!/usr/bin/env python3
"""
包完整性与供应链安全 - 基于启发式规则的包信任评估

检查项（相互独立，任一失败只追加问题，不中断其他检查）:
    - 已知漏洞（本地登记表）
    - 元数据: 可疑包名、缺少描述/仓库/许可证、可疑关键词
    - 发布者信任度: 发布者其他包的年龄、仓库链接、描述质量 -> [0, 1]
    - 包年龄与版本发布频率
    - 下载量异常（尽力而为，失败不影响结果）

存在 high/critical 问题时 safe 为 False。
"""

import dataclasses
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from urllib.parse import quote, urlencode

from core.async_http_client import SecureHttpClient
from core.config import HttpClientConfig
from core.exceptions import (
    ConfigError,
    GatewayError,
    IntegrityError,
    RegistryDataError,
    ValidationError,
)
from core.registry_client import REGISTRY_URL, get_package_info, parse_timestamp
from core.security.event_log import SecurityEventLog, Severity, security_event_log
from core.security.input_validator import InputValidator, default_validator
from utils.decorators import async_log_execution, async_measure_time

logger = logging.getLogger(__name__)

DOWNLOADS_HOST = "api.npmjs.org"

DEFAULT_TRUSTED_PUBLISHERS = frozenset({
    "npm", "facebook", "google", "microsoft", "sindresorhus", "johnpapa", "angular", "typescript",
})

SUSPICIOUS_KEYWORDS = ("hack", "crack", "bypass", "exploit", "malware")

# 可疑包名: 重复字母（仿冒）、长数字串、单字母、特权/恶意词、挖矿
SUSPICIOUS_NAME_PATTERNS = (
    re.compile(r'l{2,}'),
    re.compile(r'o{2,}'),
    re.compile(r'[0-9]{4,}'),
    re.compile(r'^[a-z]$'),
    re.compile(r'^[a-z]-[a-z]$'),
    re.compile(r'admin|root|sudo|exec|eval|system', re.IGNORECASE),
    re.compile(r'hack|crack|exploit|payload', re.IGNORECASE),
    re.compile(r'crypto.*(?:miner|mining)', re.IGNORECASE),
)

VERSION_PATTERN = re.compile(r'^[0-9A-Za-z][0-9A-Za-z.+-]{0,63}$')

NEW_PACKAGE_DAYS = 7
VERSION_BOMBING_TOTAL = 50
VERSION_BOMBING_RECENT = 10
VERSION_BOMBING_WINDOW_DAYS = 30
DOWNLOAD_ANOMALY_DAYS = 30
DOWNLOAD_ANOMALY_COUNT = 100_000
UNTRUSTED_SCORE = 0.3
NO_HISTORY_SCORE = 0.1
FAILED_LOOKUP_SCORE = 0.2


@dataclass
class Issue:
    """单个安全问题"""
    type: str
    severity: Severity
    message: str
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "severity": self.severity.value, "message": self.message, **self.extra}


@dataclass
class TrustAssessment:
    """包信任评估结果"""
    package_name: str
    version: str
    safe: bool = True
    issues: List[Issue] = field(default_factory=list)
    publisher_score: float = 0.0
    metadata: Optional[Dict[str, Any]] = None

    def add(self, issue_type: str, severity: Severity, message: str, **extra):
        self.issues.append(Issue(issue_type, severity, message, extra))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package_name": self.package_name,
            "version": self.version,
            "safe": self.safe,
            "issues": [i.to_dict() for i in self.issues],
            "publisher_score": self.publisher_score,
        }


def _is_blocking(issue: Issue) -> bool:
    return issue.severity in (Severity.HIGH, Severity.CRITICAL)


def _days_since(moment: datetime, now: datetime) -> float:
    return (now - moment).total_seconds() / 86400


def generate_package_hash(content: Union[bytes, str]) -> str:
    """计算包内容的 sha256"""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


class IntegrityScorer:
    """包完整性检查器"""

    def __init__(
        self,
        http_client: Optional[SecureHttpClient] = None,
        validator: Optional[InputValidator] = None,
        event_log: Optional[SecurityEventLog] = None,
        trusted_publishers: Iterable[str] = DEFAULT_TRUSTED_PUBLISHERS,
        clock: Callable[[], datetime] = None
    ):
        """
        Args:
            http_client: 安全 HTTP 客户端，默认新建并把下载统计主机加入白名单
            validator: 包名验证器
            event_log: 安全事件日志
            trusted_publishers: 受信任发布者（小写）
            clock: 返回当前 UTC 时间
        """
        self.validator = validator if validator is not None else default_validator
        if http_client is None:
            base = HttpClientConfig()
            http_client = SecureHttpClient(
                dataclasses.replace(base, allowed_hosts=base.allowed_hosts | {DOWNLOADS_HOST}),
                validator=self.validator,
            )
        self.http_client = http_client
        self.event_log = event_log if event_log is not None else security_event_log
        self.trusted_publishers = frozenset(p.lower() for p in trusted_publishers)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.known_vulnerabilities: Dict[str, List[Issue]] = {}

    # ========== 主流程 ==========

    async def verify_package(self, name: str, version: str = "latest") -> TrustAssessment:
        """
        验证包的完整性与安全性

        任何获取或解析失败都记为 high 级别的 verification_error，不抛出异常。
        """
        result = TrustAssessment(package_name=name, version=version)

        try:
            metadata = await self.get_package_metadata(name)
            result.metadata = metadata

            self.check_vulnerabilities(name, result)
            self.check_metadata(metadata, result)
            await self.check_publisher_trust(metadata, result)
            self.check_package_age(metadata, result)
            await self.check_download_stats(metadata, result)

            result.safe = not any(_is_blocking(i) for i in result.issues)
            if not result.safe:
                self.event_log.log_event("package_integrity_failure", {
                    "package": name,
                    "issues": len(result.issues),
                    "severities": [i.severity.value for i in result.issues],
                })
        except GatewayError as e:
            result.safe = False
            result.add("verification_error", Severity.HIGH, f"Failed to verify package: {e.message}")

        return result

    async def get_package_metadata(self, name: str) -> Dict[str, Any]:
        metadata = await get_package_info(name, self.http_client)
        if not metadata.get("name"):
            raise RegistryDataError("Invalid package metadata received")
        return metadata

    # ========== 检查项 ==========

    def check_vulnerabilities(self, name: str, result: TrustAssessment):
        for issue in self.known_vulnerabilities.get(name, []):
            result.issues.append(dataclasses.replace(issue, extra=dict(issue.extra)))

    def check_metadata(self, metadata: Dict[str, Any], result: TrustAssessment):
        if self.is_suspicious_package_name(str(metadata.get("name", ""))):
            result.add("suspicious_name", Severity.MEDIUM, "Package name contains suspicious patterns")

        description = metadata.get("description")
        if not isinstance(description, str) or len(description) < 10:
            result.add("missing_description", Severity.LOW, "Package lacks proper description")

        keywords = metadata.get("keywords")
        if isinstance(keywords, list):
            found = [k for k in keywords
                     if isinstance(k, str) and any(s in k.lower() for s in SUSPICIOUS_KEYWORDS)]
            if found:
                result.add("suspicious_keywords", Severity.HIGH,
                           f"Package contains suspicious keywords: {', '.join(found)}")

        repository = metadata.get("repository")
        if not (isinstance(repository, dict) and repository.get("url")) and not isinstance(repository, str):
            result.add("no_repository", Severity.LOW, "Package has no repository information")

        if not metadata.get("license"):
            result.add("no_license", Severity.LOW, "Package has no license information")

    async def check_publisher_trust(self, metadata: Dict[str, Any], result: TrustAssessment):
        author = self._author_name(metadata)
        if not author:
            result.publisher_score = 0.0
            result.add("no_author", Severity.MEDIUM, "Package has no identifiable author")
            return

        if author.lower() in self.trusted_publishers:
            result.publisher_score = 1.0
            return

        score = await self.calculate_publisher_trust_score(author)
        result.publisher_score = score
        if score < UNTRUSTED_SCORE:
            result.add("untrusted_publisher", Severity.MEDIUM, f'Publisher "{author}" has low trust score')

    def check_package_age(self, metadata: Dict[str, Any], result: TrustAssessment):
        now = self._clock()
        times = metadata.get("time") if isinstance(metadata.get("time"), dict) else {}

        created = parse_timestamp(times.get("created"))
        if created is not None:
            age_days = _days_since(created, now)
            if age_days < NEW_PACKAGE_DAYS:
                result.add("very_new_package", Severity.MEDIUM,
                           f"Package is very new ({round(age_days)} days old)")

        versions = metadata.get("versions") if isinstance(metadata.get("versions"), dict) else {}
        if len(versions) > VERSION_BOMBING_TOTAL:
            recent = 0
            for version in versions:
                published = parse_timestamp(times.get(version))
                if published is not None and _days_since(published, now) < VERSION_BOMBING_WINDOW_DAYS:
                    recent += 1
            if recent > VERSION_BOMBING_RECENT:
                result.add("version_bombing", Severity.HIGH,
                           f"Too many versions published recently ({recent} in {VERSION_BOMBING_WINDOW_DAYS} days)")

    async def check_download_stats(self, metadata: Dict[str, Any], result: TrustAssessment):
        """下载量异常检查，失败时忽略"""
        name = str(metadata.get("name", ""))
        url = f"https://{DOWNLOADS_HOST}/downloads/point/last-month/{quote(name, safe='@/')}"
        try:
            stats = await self.http_client.get_json(url)
        except GatewayError as e:
            logger.debug(f"无法获取下载统计: {e.code}")
            return

        downloads = stats.get("downloads") if isinstance(stats, dict) else None
        if not isinstance(downloads, (int, float)):
            return

        times = metadata.get("time") if isinstance(metadata.get("time"), dict) else {}
        created = parse_timestamp(times.get("created"))
        if created is None:
            return
        if _days_since(created, self._clock()) < DOWNLOAD_ANOMALY_DAYS and downloads > DOWNLOAD_ANOMALY_COUNT:
            result.add("suspicious_download_pattern", Severity.MEDIUM,
                       "High download count for new package may indicate artificial inflation")

    async def calculate_publisher_trust_score(self, publisher: str) -> float:
        """
        根据发布者的历史包计算信任分

        每个包: 年龄（最多两年）* 0.1 + 有仓库链接 0.1 + 描述超过20字符 0.05，
        取平均值并截断到 [0, 1]。无历史记录 0.1，查询失败 0.2。
        """
        url = f"{REGISTRY_URL}/-/v1/search?{urlencode({'text': f'author:{publisher}', 'size': 20})}"
        try:
            search = await self.http_client.get_json(url)
        except GatewayError as e:
            logger.debug(f"发布者信任度查询失败: {e.code}")
            return FAILED_LOOKUP_SCORE

        objects = search.get("objects") if isinstance(search, dict) else None
        if not isinstance(objects, list) or not objects:
            return NO_HISTORY_SCORE

        now = self._clock()
        score = 0.0
        for item in objects:
            package = item.get("package") if isinstance(item, dict) else None
            if not isinstance(package, dict):
                continue
            published = parse_timestamp(package.get("date"))
            if published is not None:
                score += min(max(_days_since(published, now), 0) / 365, 2) * 0.1
            links = package.get("links")
            if isinstance(links, dict) and links.get("repository"):
                score += 0.1
            description = package.get("description")
            if isinstance(description, str) and len(description) > 20:
                score += 0.05

        return max(0.0, min(score / len(objects), 1.0))

    # ========== 辅助 ==========

    @staticmethod
    def _author_name(metadata: Dict[str, Any]) -> Optional[str]:
        author = metadata.get("author")
        if isinstance(author, dict) and author.get("name"):
            return str(author["name"])
        if isinstance(author, str) and author.strip():
            return author.strip()
        maintainers = metadata.get("maintainers")
        if isinstance(maintainers, list) and maintainers and isinstance(maintainers[0], dict):
            name = maintainers[0].get("name")
            return str(name) if name else None
        return None

    @staticmethod
    def is_suspicious_package_name(name: str) -> bool:
        """包名是否匹配可疑模式"""
        return any(p.search(name) for p in SUSPICIOUS_NAME_PATTERNS)

    def add_known_vulnerability(self, name: str, message: str, severity: Union[Severity, str] = Severity.MEDIUM,
                                cve: Optional[str] = None, published_date: Optional[str] = None):
        """登记已知漏洞"""
        extra = {k: v for k, v in (("cve", cve), ("published_date", published_date)) if v}
        self.known_vulnerabilities.setdefault(name, []).append(
            Issue("known_vulnerability", Severity(severity), message, extra)
        )

    async def verify_tarball_integrity(self, name: str, version: str, expected_hash: str) -> bool:
        """
        下载 tarball 并校验 sha256

        Raises:
            IntegrityError: 哈希不匹配
        """
        sanitized = self.validator.sanitize_package_name(name)
        if not isinstance(version, str) or not VERSION_PATTERN.match(version):
            raise ValidationError("Invalid package version format", field="version", value=version)

        basename = sanitized.split("/")[-1]
        url = f"{REGISTRY_URL}/{quote(sanitized, safe='@/')}/-/{basename}-{version}.tgz"
        try:
            response = await self.http_client.request(url)
            actual = generate_package_hash(response.body)
            if actual != expected_hash.lower():
                raise IntegrityError("Package integrity check failed",
                                     details={"expected": expected_hash, "actual": actual})
        except GatewayError as e:
            self.event_log.log_event("package_integrity_failure", {
                "package": name, "version": version, "error": e.code,
            })
            raise
        return True


@dataclass
class ScanReport:
    """项目依赖扫描报告"""
    safe: bool = True
    scanned_packages: int = 0
    issues: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def read_manifest(path: Union[str, Path]) -> Dict[str, Any]:
    """读取 package.json 格式的清单文件"""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError("Manifest file not found", cause=e)
    except ValueError as e:
        raise ConfigError("Manifest is not valid JSON", cause=e)
    if not isinstance(data, dict):
        raise ConfigError("Manifest must be an object")
    return data


class SupplyChainScanner:
    """供应链安全扫描"""

    def __init__(self, scorer: Optional[IntegrityScorer] = None,
                 manifest_reader: Callable[[Union[str, Path]], Dict[str, Any]] = read_manifest):
        self.scorer = scorer if scorer is not None else IntegrityScorer()
        self.manifest_reader = manifest_reader

    @async_measure_time
    @async_log_execution
    async def scan_project(self, manifest_path: Union[str, Path]) -> ScanReport:
        """
        逐个验证清单中声明的依赖（dependencies + devDependencies）

        Returns:
            ScanReport，问题按最高严重程度降序排列
        """
        report = ScanReport()

        try:
            manifest = self.manifest_reader(manifest_path)
        except GatewayError as e:
            report.safe = False
            report.issues.append({"type": "scan_error", "message": f"Failed to scan project: {e.message}"})
            return report

        dependencies: Dict[str, Any] = {}
        for section in ("dependencies", "devDependencies"):
            declared = manifest.get(section)
            if isinstance(declared, dict):
                dependencies.update(declared)

        for name, version in dependencies.items():
            assessment = await self.scorer.verify_package(name, str(version))
            report.scanned_packages += 1
            if not assessment.safe:
                report.safe = False
                report.issues.append({
                    "package": name,
                    "version": str(version),
                    "issues": [i.to_dict() for i in assessment.issues],
                })

        report.issues.sort(key=self._max_rank, reverse=True)
        report.recommendations = self.generate_recommendations(report)
        return report

    @staticmethod
    def _max_rank(entry: Dict[str, Any]) -> int:
        return max((Severity(i["severity"]).rank for i in entry.get("issues", [])), default=-1)

    def generate_recommendations(self, report: ScanReport) -> List[str]:
        """按严重程度生成修复建议"""
        if not report.issues:
            return ["All scanned packages appear safe"]

        recommendations = []
        severities = {i["severity"] for entry in report.issues for i in entry.get("issues", [])}
        if Severity.CRITICAL.value in severities:
            recommendations.append("CRITICAL: Review and replace packages with critical security issues")
        if Severity.HIGH.value in severities:
            recommendations.append("HIGH: Update or replace packages with high-severity issues")
        recommendations.append("Regular security scans recommended")
        recommendations.append("Consider using package-lock.json for dependency integrity")
        return recommendations


# 默认实例
package_integrity_checker = IntegrityScorer()
supply_chain_scanner = SupplyChainScanner(package_integrity_checker)
