"""
异常体系、安全错误处理与安全事件日志测试
"""

import logging

import pytest

from core.exceptions import (
    ConfigError,
    ExecutionTimeout,
    GatewayError,
    IntegrityError,
    OutputLimitExceeded,
    PolicyViolation,
    RateLimited,
    RegistryDataError,
    RequestTimeout,
    ResourceLimitExceeded,
    ResponseFormatError,
    ResponseTooLarge,
    SpawnError,
    ProcessError,
    TransportError,
    ValidationError,
    handle_exceptions,
    is_retriable,
    redact,
    wrap_exception,
)
from core.security.error_handler import (
    create_security_error,
    generate_secure_hash,
    handle_secure_error,
    sanitize_for_logging,
    with_secure_error_handling,
)
from core.async_http_client import SecureHttpClient
from core.package_integrity import IntegrityScorer
from core.security.config_crypto import ConfigCrypto
from core.security.event_log import (
    DEFAULT_MAX_EVENTS,
    SecurityEventLog,
    Severity,
    security_event_log,
)
from core.security.input_validator import InputValidator
from core.security.safe_executor import SecureExecutor


class TestRedact:
    """测试脱敏"""

    def test_credentials_masked(self):
        text = "url?password=hunter2&token=abc123 api_key=xyz secret: s3"
        result = redact(text)
        assert "hunter2" not in result
        assert "abc123" not in result
        assert "xyz" not in result
        assert "s3" not in result
        assert "password=***" in result

    def test_truncated(self):
        assert len(redact("a" * 1000)) == 200
        assert len(redact("a" * 1000, 50)) == 50

    def test_non_string(self):
        assert redact(None) == "[non-string value]"
        assert redact(42) == "[non-string value]"


class TestGatewayError:
    """测试异常基类"""

    def test_message_redacted(self):
        err = GatewayError("login failed password=hunter2")
        assert "hunter2" not in str(err)
        assert err.code == "GatewayError"

    def test_message_truncated(self):
        assert len(GatewayError("x" * 2000).message) == 500

    def test_error_id_unique(self):
        assert GatewayError("a").error_id != GatewayError("a").error_id

    def test_to_dict_hides_details_outside_debug(self):
        err = ValidationError("bad", field="packageName", value="x;y")
        data = err.to_dict(debug=False)
        assert data["error"] == "ValidationError"
        assert "details" not in data
        assert "traceback" not in data

    def test_to_dict_debug(self):
        cause = ValueError("root token=abc")
        err = TransportError("failed", status_code=502, cause=cause)
        data = err.to_dict(debug=True)
        assert data["details"]["status_code"] == 502
        assert data["cause"]["type"] == "ValueError"
        assert "abc" not in data["cause"]["message"]
        assert err.__cause__ is cause

    def test_hierarchy(self):
        for cls in (ExecutionTimeout, OutputLimitExceeded, RequestTimeout, ResponseTooLarge):
            assert issubclass(cls, ResourceLimitExceeded)
        assert issubclass(SpawnError, ProcessError)
        for cls in (ConfigError, ValidationError, PolicyViolation, RateLimited, TransportError,
                    ResponseFormatError, RegistryDataError, IntegrityError, ProcessError):
            assert issubclass(cls, GatewayError)

    def test_structured_attributes(self):
        assert PolicyViolation("no", rule="command_whitelist").rule == "command_whitelist"
        assert RateLimited(retry_after_ms=1500).retry_after_ms == 1500
        limit = OutputLimitExceeded("too much", limit=10, observed=20)
        assert (limit.limit, limit.observed) == (10, 20)
        assert ProcessError("killed", signal=9).signal == 9
        assert ValidationError("bad", field="url", value="password=x").sanitized_value == "password=***"


class TestRetriable:
    """测试重试分类"""

    @pytest.mark.parametrize("exc", [
        ValidationError("x"),
        PolicyViolation("x"),
        ExecutionTimeout("x"),
        ResponseTooLarge("x"),
        RequestTimeout("x"),
        RateLimited(),
        IntegrityError("x"),
        ConfigError("x"),
        ResponseFormatError("x"),
        TransportError("x", status_code=404, retriable=False),
    ])
    def test_not_retriable(self, exc):
        assert is_retriable(exc) is False

    @pytest.mark.parametrize("exc", [
        TransportError("x", status_code=503),
        ProcessError("x"),
        ConnectionResetError(),
    ])
    def test_retriable(self, exc):
        assert is_retriable(exc) is True


class TestWrapException:
    """测试异常包装"""

    def test_gateway_error_passthrough(self):
        err = PolicyViolation("x")
        assert wrap_exception(err, TransportError) is err

    def test_wraps_with_cause(self):
        cause = KeyError("k")
        wrapped = wrap_exception(cause, RegistryDataError, "missing")
        assert isinstance(wrapped, RegistryDataError)
        assert wrapped.cause is cause
        assert wrapped.details["original_type"] == "KeyError"

    def test_handle_exceptions_maps_and_reraises(self):
        @handle_exceptions(reraise=True)
        def broken():
            raise ValueError("bad value")

        with pytest.raises(ValidationError):
            broken()

    def test_handle_exceptions_default_return(self):
        @handle_exceptions(default_return="fallback")
        def broken():
            raise FileNotFoundError("missing")

        assert broken() == "fallback"

    @pytest.mark.asyncio
    async def test_handle_exceptions_async(self):
        @handle_exceptions(reraise=True)
        async def broken():
            raise PermissionError("denied")

        with pytest.raises(PolicyViolation):
            await broken()


class TestHandleSecureError:
    """测试面向用户的错误出口"""

    def test_rate_limited(self):
        result = handle_secure_error(RateLimited(retry_after_ms=100), debug=False)
        assert result["user_message"] == "Too many requests. Please wait before trying again."
        assert result["handled"] is True
        assert result["should_exit"] is False

    def test_validation_error(self):
        result = handle_secure_error(ValidationError("bad", field="packageName"), debug=False)
        assert result["user_message"] == "Invalid input for packageName. Please check the format and try again."

    @pytest.mark.parametrize("rule,fragment", [
        ("command_injection", "Invalid command detected"),
        ("path_traversal", "Invalid file path detected"),
        ("malicious_input", "Suspicious input detected"),
    ])
    def test_blocking_rules_request_exit(self, rule, fragment):
        result = handle_secure_error(PolicyViolation("blocked", rule=rule), debug=False)
        assert fragment in result["user_message"]
        assert result["should_exit"] is True

    def test_other_gateway_error(self):
        result = handle_secure_error(PolicyViolation("no", rule="domain_whitelist"), debug=False)
        assert result["user_message"] == "Security validation failed. Please check your input."
        assert result["should_exit"] is False

    def test_unknown_error_not_leaked(self):
        result = handle_secure_error(RuntimeError("db password=hunter2 at /srv/app.py"), debug=False)
        assert result["user_message"] == "An unexpected error occurred. Please try again."
        assert "hunter2" not in str(result)

    def test_error_id_reused(self):
        err = TransportError("x")
        assert handle_secure_error(err, debug=False)["error_id"] == err.error_id

    def test_generated_error_id(self):
        assert len(handle_secure_error(KeyError("x"), debug=False)["error_id"]) == 16

    def test_decorator_sync(self):
        @with_secure_error_handling
        def check(name):
            raise create_security_error.invalid_package_name(name)

        result = check("Bad Name")
        assert result["handled"] is True
        assert "packageName" in result["user_message"]

    @pytest.mark.asyncio
    async def test_decorator_async_with_context(self):
        @with_secure_error_handling(context={"operation": "scan"})
        async def scan():
            raise create_security_error.command_injection("ls; rm")

        result = await scan()
        assert result["should_exit"] is True

    def test_decorator_passes_result(self):
        @with_secure_error_handling
        def ok():
            return 5

        assert ok() == 5

    def test_factories(self):
        assert create_security_error.path_traversal("../x").rule == "path_traversal"
        assert create_security_error.malicious_input("x", "packageName").rule == "malicious_input"
        assert create_security_error.rate_limit("host", 500).retry_after_ms == 500
        assert create_security_error.invalid_file_path("x").field == "filePath"

    def test_helpers(self):
        assert sanitize_for_logging("token=abc") == "token=***"
        first = generate_secure_hash("value")
        assert len(first) == 8
        int(first, 16)


class TestSecurityEventLog:
    """测试安全事件日志"""

    def test_severity_mapping(self, event_log):
        assert event_log.log_event("command_injection").severity == Severity.CRITICAL
        assert event_log.log_event("path_traversal").severity == Severity.HIGH
        assert event_log.log_event("rate_limit").severity == Severity.MEDIUM
        assert event_log.log_event("key_rotation").severity == Severity.LOW
        assert event_log.log_event("something_new").severity == Severity.MEDIUM

    def test_details_redacted(self, event_log):
        event = event_log.log_event("malicious_input", {"value": "password=hunter2"})
        assert "hunter2" not in event.details
        assert event.timestamp

    def test_filtering(self, event_log):
        event_log.log_event("rate_limit")
        event_log.log_event("command_injection")
        event_log.log_event("validation_error")

        assert [e.type for e in event_log.get_events("rate_limit")] == ["rate_limit"]
        high = event_log.get_events(min_severity=Severity.HIGH)
        assert [e.type for e in high] == ["command_injection"]
        assert len(event_log.get_events(min_severity="medium")) == 2

    def test_returns_copy(self, event_log):
        event_log.log_event("rate_limit")
        events = event_log.get_events()
        events.clear()
        assert len(event_log) == 1

    def test_clear(self, event_log):
        event_log.log_event("rate_limit")
        event_log.clear_events()
        assert len(event_log) == 0

    def test_forwarded_to_logging(self, event_log, caplog):
        with caplog.at_level(logging.INFO, logger="core.security.events"):
            event_log.log_event("command_injection", {"rule": "x"})
        assert any("[SECURITY EVENT] command_injection" in r.getMessage() for r in caplog.records)
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_to_dict(self, event_log):
        data = event_log.log_event("ssrf_blocked").to_dict()
        assert data["severity"] == "high"
        assert data["type"] == "ssrf_blocked"

    def test_instances_isolated(self):
        first, second = SecurityEventLog(), SecurityEventLog()
        first.log_event("rate_limit")
        assert len(second) == 0

    def test_empty_log_is_truthy(self):
        assert bool(SecurityEventLog()) is True

    def test_bounded(self):
        """测试超过上限后丢弃最早的事件"""
        bounded = SecurityEventLog(max_events=3)
        for i in range(5):
            bounded.log_event("rate_limit", {"n": i})
        events = bounded.get_events()
        assert len(bounded) == 3
        assert ['{"n": 2}', '{"n": 3}', '{"n": 4}'] == [e.details for e in events]

    def test_bounded_default(self):
        assert SecurityEventLog()._events.maxlen == DEFAULT_MAX_EVENTS

    def test_invalid_bound(self):
        with pytest.raises(ValueError):
            SecurityEventLog(max_events=0)


class TestEventLogInjection:
    """测试组件使用注入的空事件日志而不是全局实例"""

    def test_components_keep_empty_log(self, event_log, validator, http_client, temp_dir):
        assert len(event_log) == 0
        assert InputValidator(event_log=event_log).event_log is event_log
        assert SecureExecutor(validator=validator, event_log=event_log).event_log is event_log
        assert SecureHttpClient(validator=validator, event_log=event_log).event_log is event_log
        assert IntegrityScorer(http_client=http_client, event_log=event_log).event_log is event_log
        crypto = ConfigCrypto(key_path=temp_dir / "config.key", event_log=event_log)
        assert crypto.event_log is event_log

    def test_injected_validator_kept(self, validator):
        assert SecureExecutor(validator=validator).validator is validator
        assert SecureHttpClient(validator=validator).validator is validator

    def test_rejection_recorded_in_injected_log(self, event_log):
        before = len(security_event_log)
        with pytest.raises(PolicyViolation):
            InputValidator(event_log=event_log).sanitize_package_name("lodash;id")
        assert len(event_log) == 1
        assert len(security_event_log) == before
