#!/usr/bin/env python3
"""
配置加密 - 敏感配置字段的静态加密与完整性校验

密钥生命周期:
    首次使用时若密钥文件不存在，生成32字节随机密钥并以 0600 权限写入；
    否则读取已有密钥。密钥在进程内缓存。

加密格式:
    {"encrypted": <hex密文>, "iv": <hex>, "tag": <hex>, "algorithm": "aes-256-gcm"}
    使用 AES-256-GCM，tag 为 GCM 认证标签，篡改或密钥错误时解密失败。
"""

import copy
import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import CryptoConfig
from core.exceptions import ConfigError, IntegrityError
from core.security.event_log import SecurityEventLog, security_event_log
from utils.decorators import log_execution

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
TAG_LENGTH = 16
METADATA_FIELD = "_encrypted"
METADATA_VERSION = "1.0.0"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _atomic_write_json(path: Path, data: Any):
    """写入临时文件后原子替换，文件权限为 0600"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _read_json(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except ValueError as e:
        raise ConfigError("Configuration file is not valid JSON", cause=e)


@dataclass(frozen=True)
class EncryptedBlob:
    """加密后的单个值"""
    encrypted: str
    iv: str
    tag: str
    algorithm: str = ALGORITHM

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedBlob":
        if not isinstance(data, dict):
            raise IntegrityError("Encrypted value must be an object")
        try:
            return cls(
                encrypted=str(data["encrypted"]),
                iv=str(data["iv"]),
                tag=str(data["tag"]),
                algorithm=str(data.get("algorithm", ALGORITHM)),
            )
        except KeyError as e:
            raise IntegrityError("Encrypted value is missing a field", cause=e)

    @staticmethod
    def is_blob(value: Any) -> bool:
        return isinstance(value, dict) and "encrypted" in value and "iv" in value


class ConfigCrypto:
    """
    安全配置管理器

    只加密文档顶层的敏感字段（tokens、apiKeys、secrets、passwords）
    下的字符串叶子，其余字段保持明文。
    """

    def __init__(self, config: CryptoConfig = None, key_path: Optional[Union[str, Path]] = None,
                 event_log: SecurityEventLog = None):
        """
        Args:
            config: 加密配置
            key_path: 密钥文件路径，覆盖 config.key_path
            event_log: 安全事件日志
        """
        self.config = config or CryptoConfig()
        self.key_path = Path(key_path or self.config.key_path)
        self.event_log = event_log if event_log is not None else security_event_log
        self._key: Optional[bytes] = None

    # ========== 密钥 ==========

    def initialize_key(self) -> bytes:
        """加载或生成密钥（进程内缓存）"""
        if self._key is not None:
            return self._key

        if self.key_path.exists():
            key = self.key_path.read_bytes()
        else:
            key = self._generate_key()

        if len(key) != self.config.key_length:
            raise ConfigError(
                f"Encryption key must be {self.config.key_length} bytes",
                details={"key_path": str(self.key_path), "length": len(key)}
            )

        self._key = key
        return key

    def _generate_key(self) -> bytes:
        key = os.urandom(self.config.key_length)
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.key_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            # 其他进程刚刚创建了密钥
            return self.key_path.read_bytes()
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        logger.info(f"已生成新的配置加密密钥: {self.key_path}")
        return key

    # ========== 加解密 ==========

    def encrypt(self, plaintext: str) -> EncryptedBlob:
        """加密字符串，每次调用使用新的随机IV"""
        if not isinstance(plaintext, str):
            raise ConfigError("Only string values can be encrypted")

        key = self.initialize_key()
        iv = os.urandom(self.config.iv_length)
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return EncryptedBlob(
            encrypted=ciphertext.hex(),
            iv=iv.hex(),
            tag=tag.hex(),
            algorithm=ALGORITHM,
        )

    def decrypt(self, blob: Union[EncryptedBlob, Dict[str, Any]]) -> str:
        """
        解密

        Raises:
            IntegrityError: 算法不支持、格式错误、密文被篡改或密钥不匹配
        """
        if not isinstance(blob, EncryptedBlob):
            blob = EncryptedBlob.from_dict(blob)

        if blob.algorithm != ALGORITHM:
            raise IntegrityError("Unsupported encryption algorithm")

        key = self.initialize_key()
        try:
            iv = bytes.fromhex(blob.iv)
            sealed = bytes.fromhex(blob.encrypted) + bytes.fromhex(blob.tag)
        except ValueError as e:
            raise IntegrityError("Encrypted value is malformed", cause=e)

        try:
            plaintext = AESGCM(key).decrypt(iv, sealed, None)
        except (InvalidTag, ValueError) as e:
            self.event_log.log_event("integrity_failure", {"reason": "decrypt_failed"})
            raise IntegrityError("Decryption failed: data may have been tampered with", cause=e)

        return plaintext.decode("utf-8")

    def encrypt_value(self, value: str) -> Dict[str, str]:
        """加密单个值，返回可直接序列化的字典"""
        return self.encrypt(value).to_dict()

    def decrypt_value(self, value: Dict[str, Any]) -> str:
        """解密单个值"""
        return self.decrypt(value)

    def _encrypt_tree(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.encrypt(value).to_dict()
        if isinstance(value, dict):
            return {k: self._encrypt_tree(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._encrypt_tree(v) for v in value]
        return value

    def _decrypt_tree(self, value: Any) -> Any:
        if EncryptedBlob.is_blob(value):
            return self.decrypt(value)
        if isinstance(value, dict):
            return {k: self._decrypt_tree(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._decrypt_tree(v) for v in value]
        return value

    # ========== 配置文件 ==========

    def store_secure_config(self, config_path: Union[str, Path], document: Dict[str, Any]):
        """
        加密敏感字段后写入配置文件

        Args:
            config_path: 配置文件路径
            document: 配置文档（不会被修改）
        """
        if not isinstance(document, dict):
            raise ConfigError("Configuration document must be an object")

        self.initialize_key()
        secure = copy.deepcopy(document)
        fields = [f for f in self.config.sensitive_fields if document.get(f)]
        for name in fields:
            secure[name] = self._encrypt_tree(secure[name])

        secure[METADATA_FIELD] = {
            "timestamp": _now_iso(),
            "version": METADATA_VERSION,
            "fields": fields,
        }
        _atomic_write_json(Path(config_path), secure)
        logger.debug(f"已写入加密配置: {len(fields)} 个敏感字段")

    def load_secure_config(self, config_path: Union[str, Path]) -> Optional[Dict[str, Any]]:
        """
        读取配置并解密敏感字段

        Returns:
            解密后的文档；文件不存在时返回 None；未加密的文档原样返回
        """
        path = Path(config_path)
        if not path.exists():
            return None

        document = _read_json(path)
        if not isinstance(document, dict) or METADATA_FIELD not in document:
            return document

        metadata = document.pop(METADATA_FIELD)
        if metadata is None:
            metadata = {}
        fields = metadata.get("fields", []) if isinstance(metadata, dict) else None
        if not isinstance(fields, list) or not all(isinstance(f, str) for f in fields):
            self.event_log.log_event("integrity_failure", {"reason": "malformed_metadata"})
            raise IntegrityError("Encrypted configuration metadata is malformed")

        self.initialize_key()
        for name in fields:
            if name in document:
                document[name] = self._decrypt_tree(document[name])
        return document

    @log_execution
    def rotate_key(self, config_path: Union[str, Path]):
        """
        轮换密钥: 用旧密钥解密，备份旧密钥到 <key>.old，生成新密钥后重新加密

        Raises:
            ConfigError: 配置文件不存在
        """
        document = self.load_secure_config(config_path)
        if document is None:
            raise ConfigError("Configuration file not found", details={"path": str(config_path)})

        backup_path = self.key_path.with_name(self.key_path.name + ".old")
        os.replace(self.key_path, backup_path)
        self._key = None

        try:
            self.initialize_key()
            self.store_secure_config(config_path, document)
        except Exception:
            # 恢复旧密钥，配置文件仍由旧密钥加密
            os.replace(backup_path, self.key_path)
            self._key = None
            raise

        self.event_log.log_event("key_rotation", {"backup": backup_path.name})
        logger.info(f"密钥轮换完成，旧密钥已备份到: {backup_path}")


@dataclass(frozen=True)
class IntegrityResult:
    """完整性校验结果"""
    valid: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"valid": self.valid}
        if self.reason:
            result["reason"] = self.reason
        return result


class ConfigIntegrityChecker:
    """配置完整性校验（文档内容哈希，不含哈希字段本身）"""

    INTEGRITY_FIELD = "_integrity"

    @classmethod
    def generate_hash(cls, document: Dict[str, Any]) -> str:
        content = {k: v for k, v in document.items() if k != cls.INTEGRITY_FIELD}
        canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def store_with_integrity(cls, config_path: Union[str, Path], document: Dict[str, Any]):
        """写入配置并附带哈希"""
        stored = {k: v for k, v in document.items() if k != cls.INTEGRITY_FIELD}
        stored[cls.INTEGRITY_FIELD] = {
            "hash": cls.generate_hash(document),
            "timestamp": _now_iso(),
        }
        _atomic_write_json(Path(config_path), stored)

    @classmethod
    def verify_document(cls, document: Any) -> IntegrityResult:
        if not isinstance(document, dict):
            return IntegrityResult(False, "Configuration is not an object")

        integrity = document.get(cls.INTEGRITY_FIELD)
        if not isinstance(integrity, dict) or "hash" not in integrity:
            return IntegrityResult(False, "No integrity data found")

        if integrity["hash"] != cls.generate_hash(document):
            return IntegrityResult(False, "Hash mismatch - configuration may have been tampered with")
        return IntegrityResult(True)

    @classmethod
    def verify_integrity(cls, config_path: Union[str, Path]) -> IntegrityResult:
        """重新计算文件内容哈希并与存储值比较"""
        path = Path(config_path)
        if not path.exists():
            return IntegrityResult(False, "File not found")
        try:
            document = _read_json(path)
        except ConfigError:
            return IntegrityResult(False, "Invalid JSON")
        return cls.verify_document(document)


# 默认实例（密钥文件位于当前工作目录）
secure_config = ConfigCrypto()
