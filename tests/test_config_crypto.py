"""
core.security.config_crypto 单元测试
"""

import json
import os
import stat
import sys

import pytest

from core.exceptions import ConfigError, IntegrityError
from core.security.config_crypto import (
    ConfigCrypto,
    ConfigIntegrityChecker,
    EncryptedBlob,
)

DOCUMENT = {
    "name": "app",
    "registry": "https://registry.npmjs.org",
    "tokens": {"npm": "npm_secretTokenValue", "github": "ghp_anotherSecret"},
    "apiKeys": ["key-one", "key-two"],
    "secrets": {},
    "retries": 3,
}


@pytest.fixture
def crypto(temp_dir, event_log):
    return ConfigCrypto(key_path=temp_dir / "keys" / "config.key", event_log=event_log)


def flip_hex(value: str) -> str:
    return ("1" if value[0] == "0" else "0") + value[1:]


class TestKey:
    """测试密钥管理"""

    def test_generated_on_first_use(self, crypto):
        key = crypto.initialize_key()
        assert len(key) == 32
        assert crypto.key_path.read_bytes() == key
        assert crypto.initialize_key() is key

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX 文件权限")
    def test_key_file_private(self, crypto):
        crypto.initialize_key()
        mode = stat.S_IMODE(os.stat(crypto.key_path).st_mode)
        assert mode == 0o600

    def test_existing_key_reused(self, crypto, event_log):
        key = crypto.initialize_key()
        other = ConfigCrypto(key_path=crypto.key_path, event_log=event_log)
        assert other.initialize_key() == key

    def test_wrong_length_rejected(self, temp_dir):
        path = temp_dir / "short.key"
        path.write_bytes(b"too short")
        with pytest.raises(ConfigError):
            ConfigCrypto(key_path=path).initialize_key()


class TestEncryptDecrypt:
    """测试加解密"""

    def test_round_trip(self, crypto):
        blob = crypto.encrypt("s3cr3t value")
        assert blob.algorithm == "aes-256-gcm"
        assert len(bytes.fromhex(blob.iv)) == 12
        assert len(bytes.fromhex(blob.tag)) == 16
        assert crypto.decrypt(blob) == "s3cr3t value"

    def test_fresh_iv_each_call(self, crypto):
        first, second = crypto.encrypt("same"), crypto.encrypt("same")
        assert first.iv != second.iv
        assert first.encrypted != second.encrypted

    def test_unicode_and_empty(self, crypto):
        assert crypto.decrypt(crypto.encrypt("")) == ""
        assert crypto.decrypt(crypto.encrypt("密钥")) == "密钥"

    def test_value_helpers(self, crypto):
        value = crypto.encrypt_value("token")
        assert set(value) == {"encrypted", "iv", "tag", "algorithm"}
        assert crypto.decrypt_value(value) == "token"

    @pytest.mark.parametrize("field_name", ["encrypted", "tag", "iv"])
    def test_tampering_detected(self, crypto, event_log, field_name):
        """测试密文、标签或IV被篡改时解密失败"""
        data = crypto.encrypt_value("sensitive")
        data[field_name] = flip_hex(data[field_name])
        with pytest.raises(IntegrityError):
            crypto.decrypt(data)
        assert len(event_log.get_events("integrity_failure")) == 1

    def test_wrong_key_fails(self, crypto, temp_dir):
        blob = crypto.encrypt("sensitive")
        other = ConfigCrypto(key_path=temp_dir / "other.key")
        with pytest.raises(IntegrityError):
            other.decrypt(blob)

    def test_unsupported_algorithm(self, crypto):
        data = crypto.encrypt_value("x")
        data["algorithm"] = "aes-256-cbc"
        with pytest.raises(IntegrityError, match="Unsupported"):
            crypto.decrypt(data)

    @pytest.mark.parametrize("data", [
        {"encrypted": "zz", "iv": "00" * 12, "tag": "00" * 16},
        {"encrypted": "00", "iv": "00" * 12},
        "not a blob",
    ])
    def test_malformed(self, crypto, data):
        with pytest.raises(IntegrityError):
            crypto.decrypt(data)

    def test_only_strings(self, crypto):
        with pytest.raises(ConfigError):
            crypto.encrypt(123)

    def test_blob_detection(self):
        assert EncryptedBlob.is_blob({"encrypted": "a", "iv": "b", "tag": "c"})
        assert not EncryptedBlob.is_blob({"npm": "value"})
        assert not EncryptedBlob.is_blob("value")


class TestSecureConfigFile:
    """测试加密配置文件读写"""

    def test_store_and_load(self, crypto, temp_dir):
        path = temp_dir / "config.json"
        crypto.store_secure_config(path, DOCUMENT)

        raw = path.read_text(encoding="utf-8")
        assert "npm_secretTokenValue" not in raw
        assert "key-one" not in raw

        stored = json.loads(raw)
        assert stored["name"] == "app"
        assert stored["retries"] == 3
        assert EncryptedBlob.is_blob(stored["tokens"]["npm"])
        assert all(EncryptedBlob.is_blob(v) for v in stored["apiKeys"])
        assert stored["_encrypted"]["version"] == "1.0.0"
        assert stored["_encrypted"]["fields"] == ["tokens", "apiKeys"]

        assert crypto.load_secure_config(path) == DOCUMENT

    def test_input_not_mutated(self, crypto, temp_dir):
        document = json.loads(json.dumps(DOCUMENT))
        crypto.store_secure_config(temp_dir / "config.json", document)
        assert document == DOCUMENT

    def test_no_temp_files_left(self, crypto, temp_dir):
        crypto.store_secure_config(temp_dir / "config.json", DOCUMENT)
        assert sorted(p.name for p in temp_dir.iterdir()) == ["config.json", "keys"]

    def test_load_missing(self, crypto, temp_dir):
        assert crypto.load_secure_config(temp_dir / "absent.json") is None

    def test_load_plain_document(self, crypto, temp_dir):
        path = temp_dir / "plain.json"
        path.write_text(json.dumps({"name": "plain"}), encoding="utf-8")
        assert crypto.load_secure_config(path) == {"name": "plain"}

    def test_load_invalid_json(self, crypto, temp_dir):
        path = temp_dir / "broken.json"
        path.write_text("{oops", encoding="utf-8")
        with pytest.raises(ConfigError):
            crypto.load_secure_config(path)

    def test_load_tampered(self, crypto, temp_dir):
        path = temp_dir / "config.json"
        crypto.store_secure_config(path, DOCUMENT)
        stored = json.loads(path.read_text(encoding="utf-8"))
        stored["tokens"]["npm"]["encrypted"] = flip_hex(stored["tokens"]["npm"]["encrypted"])
        path.write_text(json.dumps(stored), encoding="utf-8")
        with pytest.raises(IntegrityError):
            crypto.load_secure_config(path)

    @pytest.mark.parametrize("metadata", [
        ["tokens"],
        "tokens",
        {"fields": "tokens"},
        {"fields": [["tokens"]]},
    ])
    def test_load_malformed_metadata(self, crypto, temp_dir, event_log, metadata):
        """测试加密元数据格式错误时按完整性错误处理"""
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"name": "app", "_encrypted": metadata}), encoding="utf-8")
        with pytest.raises(IntegrityError, match="metadata is malformed"):
            crypto.load_secure_config(path)
        assert len(event_log.get_events("integrity_failure")) == 1

    def test_load_null_metadata(self, crypto, temp_dir):
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"name": "app", "_encrypted": None}), encoding="utf-8")
        assert crypto.load_secure_config(path) == {"name": "app"}


class TestKeyRotation:
    """测试密钥轮换"""

    def test_rotate(self, crypto, temp_dir, event_log):
        path = temp_dir / "config.json"
        crypto.store_secure_config(path, DOCUMENT)
        old_key = crypto.key_path.read_bytes()
        old_cipher = json.loads(path.read_text(encoding="utf-8"))["tokens"]["npm"]

        crypto.rotate_key(path)

        new_key = crypto.key_path.read_bytes()
        backup = crypto.key_path.with_name(crypto.key_path.name + ".old")
        assert new_key != old_key
        assert backup.read_bytes() == old_key
        assert json.loads(path.read_text(encoding="utf-8"))["tokens"]["npm"] != old_cipher
        assert crypto.load_secure_config(path) == DOCUMENT
        assert ConfigCrypto(key_path=crypto.key_path).load_secure_config(path) == DOCUMENT
        assert len(event_log.get_events("key_rotation")) == 1

    def test_rotate_missing_file(self, crypto, temp_dir):
        crypto.initialize_key()
        with pytest.raises(ConfigError):
            crypto.rotate_key(temp_dir / "absent.json")


class TestIntegrityChecker:
    """测试配置完整性校验"""

    def test_valid(self, temp_dir):
        path = temp_dir / "settings.json"
        ConfigIntegrityChecker.store_with_integrity(path, {"b": 1, "a": [1, 2]})
        result = ConfigIntegrityChecker.verify_integrity(path)
        assert result.valid is True
        assert result.to_dict() == {"valid": True}

    def test_hash_ignores_key_order(self):
        assert ConfigIntegrityChecker.generate_hash({"a": 1, "b": 2}) == \
            ConfigIntegrityChecker.generate_hash({"b": 2, "a": 1})

    def test_tampered(self, temp_dir):
        path = temp_dir / "settings.json"
        ConfigIntegrityChecker.store_with_integrity(path, {"registry": "https://registry.npmjs.org"})
        stored = json.loads(path.read_text(encoding="utf-8"))
        stored["registry"] = "https://evil.example"
        path.write_text(json.dumps(stored), encoding="utf-8")

        result = ConfigIntegrityChecker.verify_integrity(path)
        assert result.valid is False
        assert result.reason == "Hash mismatch - configuration may have been tampered with"

    def test_missing_integrity(self, temp_dir):
        path = temp_dir / "settings.json"
        path.write_text(json.dumps({"a": 1}), encoding="utf-8")
        assert ConfigIntegrityChecker.verify_integrity(path).reason == "No integrity data found"

    def test_missing_file(self, temp_dir):
        assert ConfigIntegrityChecker.verify_integrity(temp_dir / "nope.json").reason == "File not found"

    def test_invalid_json(self, temp_dir):
        path = temp_dir / "settings.json"
        path.write_text("not json", encoding="utf-8")
        assert ConfigIntegrityChecker.verify_integrity(path).reason == "Invalid JSON"
