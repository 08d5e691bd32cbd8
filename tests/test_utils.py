"""
Tests for stacklib/utils.py utility functions.

Covers:
- generate_run_id format and uniqueness
- get_timestamp format
- mask_account_id ARN masking
- tags_to_dict conversion
- write_json (local files) and join_output_path
- retry_with_backoff decorator
- hash_sensitive_id and log redaction
- error taxonomy and is_auth_error detection
- ProgressTracker counters
"""
import json
import logging
import os
import stat
import sys
import tempfile
import threading

import pytest
from botocore.exceptions import ClientError

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stacklib.utils import (
    CredentialError,
    DiscoveryError,
    ProgressTracker,
    RedactingFilter,
    StackCatalogError,
    StackFetchError,
    TemplateError,
    generate_run_id,
    get_error_code,
    get_timestamp,
    hash_sensitive_id,
    is_auth_error,
    join_output_path,
    mask_account_id,
    redact_log_message,
    retry_with_backoff,
    tags_to_dict,
    write_json,
)


def client_error(code, operation='AssumeRole'):
    return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


# =============================================================================
# generate_run_id / get_timestamp Tests
# =============================================================================

class TestGenerateRunId:
    """Tests for generate_run_id function."""

    def test_run_id_format(self):
        """Test run ID has correct format: YYYYMMDD-HHMMSS-xxxxxxxx"""
        parts = generate_run_id().split('-')

        assert len(parts) == 3
        assert len(parts[0]) == 8 and parts[0].isdigit()
        assert len(parts[1]) == 6 and parts[1].isdigit()
        assert len(parts[2]) == 8

    def test_run_id_uniqueness(self):
        """Test that run IDs are unique."""
        ids = {generate_run_id() for _ in range(50)}
        assert len(ids) == 50


class TestGetTimestamp:
    """Tests for get_timestamp function."""

    def test_timestamp_is_utc_iso(self):
        timestamp = get_timestamp()
        assert timestamp.endswith('Z')
        assert 'T' in timestamp


# =============================================================================
# mask_account_id / tags_to_dict Tests
# =============================================================================

class TestMaskAccountId:
    """Tests for mask_account_id function."""

    def test_mask_role_arn(self):
        assert mask_account_id("arn:aws:iam::123456789012:role/Reader") == "arn:aws:iam::***:role/Reader"

    def test_no_account_id(self):
        assert mask_account_id("CatalogStackReader") == "CatalogStackReader"


class TestTagsToDict:
    """Tests for tags_to_dict function."""

    def test_none_tags(self):
        assert tags_to_dict(None) == {}

    def test_empty_list(self):
        assert tags_to_dict([]) == {}

    def test_aws_format(self):
        tags = [
            {"Key": "owner", "Value": "team-orders"},
            {"Key": "project", "Value": "orders"},
        ]
        assert tags_to_dict(tags) == {"owner": "team-orders", "project": "orders"}

    def test_dict_passthrough(self):
        assert tags_to_dict({"owner": "me"}) == {"owner": "me"}

    def test_aws_with_empty_key(self):
        """Test AWS format with empty key is skipped."""
        tags = [{"Key": "", "Value": "x"}, {"Key": "lifecycle", "Value": "production"}]
        assert tags_to_dict(tags) == {"lifecycle": "production"}

    def test_unknown_format(self):
        assert tags_to_dict("not-tags") == {}


# =============================================================================
# write_json / join_output_path Tests
# =============================================================================

class TestWriteJson:
    """Tests for write_json function."""

    def test_write_local_file(self):
        """Test writing JSON to local file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "nested", "mutation.json")
            data = {"type": "full", "entities": []}

            write_json(data, filepath)

            with open(filepath) as f:
                assert json.load(f) == data

    def test_file_is_owner_only(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "report.json")
            write_json({"a": 1}, filepath)

            mode = stat.S_IMODE(os.stat(filepath).st_mode)
            assert mode & (stat.S_IRWXG | stat.S_IRWXO) == 0

    def test_write_overwrites(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "mutation.json")
            write_json({"entities": [1, 2, 3]}, filepath)
            write_json({"entities": []}, filepath)

            with open(filepath) as f:
                assert json.load(f) == {"entities": []}

    def test_serialisation_error_surfaces(self):
        circular = {}
        circular["self"] = circular

        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(ValueError, match="Circular reference"):
                write_json(circular, os.path.join(tmpdir, "broken.json"))


class TestJoinOutputPath:
    """Tests for join_output_path function."""

    def test_local(self):
        assert join_output_path("out", "report.json") == os.path.join("out", "report.json")

    def test_s3(self):
        assert join_output_path("s3://bucket/prefix/", "report.json") == "s3://bucket/prefix/report.json"


# =============================================================================
# retry_with_backoff Tests
# =============================================================================

class TestRetryWithBackoff:
    """Tests for retry_with_backoff decorator."""

    def test_no_retry_on_success(self):
        call_count = 0

        @retry_with_backoff(max_attempts=3)
        def successful_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert successful_func() == "success"
        assert call_count == 1

    def test_retry_on_failure(self):
        call_count = 0

        @retry_with_backoff(max_attempts=3, min_wait=0.01, max_wait=0.1)
        def failing_func():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ConnectionError("Not yet")
            return "success"

        assert failing_func() == "success"
        assert call_count == 3

    def test_max_attempts_exceeded(self):
        call_count = 0

        @retry_with_backoff(max_attempts=2, min_wait=0.01, max_wait=0.1)
        def always_fails():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("Always fails")

        with pytest.raises(ConnectionError, match="Always fails"):
            always_fails()
        assert call_count == 2

    def test_specific_exception_types(self):
        """Test retry only on specified exception types."""
        call_count = 0

        @retry_with_backoff(max_attempts=3, exceptions=(ValueError,), min_wait=0.01, max_wait=0.1)
        def specific_error():
            nonlocal call_count
            call_count += 1
            raise TypeError("Not retryable")

        with pytest.raises(TypeError):
            specific_error()
        assert call_count == 1


# =============================================================================
# Redaction Tests
# =============================================================================

class TestHashSensitiveId:
    """Tests for hash_sensitive_id function."""

    def test_hash_with_prefix(self):
        result = hash_sensitive_id("123456789012", "acc-")
        assert result.startswith("acc-")
        assert len(result) == 12

    def test_hash_consistency(self):
        assert hash_sensitive_id("value") == hash_sensitive_id("value")

    def test_hash_empty_string(self):
        assert hash_sensitive_id("") == ""


class TestRedactLogMessage:
    """Tests for log redaction."""

    def test_account_id_redacted(self):
        message = redact_log_message("Failed to scan account 123456789012")
        assert "123456789012" not in message
        assert "acc-" in message

    def test_arn_keeps_structure(self):
        message = redact_log_message("Assuming arn:aws:iam::123456789012:role/Reader")
        assert "123456789012" not in message
        assert message.startswith("Assuming arn:aws:iam:*:")

    def test_empty_message(self):
        assert redact_log_message("") == ""

    def test_filter_rewrites_record(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1,
                                   "account %s in 111111111111", ("222222222222",), None)
        assert RedactingFilter().filter(record) is True
        assert "111111111111" not in record.msg
        assert "222222222222" not in record.args[0]


# =============================================================================
# Error Tests
# =============================================================================

class TestErrors:
    """Tests for the error taxonomy."""

    def test_hierarchy(self):
        assert issubclass(DiscoveryError, StackCatalogError)
        assert issubclass(CredentialError, StackCatalogError)
        assert issubclass(TemplateError, StackFetchError)

    def test_credential_error_carries_account(self):
        cause = client_error('AccessDenied')
        exc = CredentialError("boom", account_id="111111111111", original_error=cause)
        assert exc.account_id == "111111111111"
        assert exc.original_error is cause
        assert str(exc) == "boom"

    def test_stack_fetch_error_carries_stack(self):
        exc = TemplateError("bad template", stack_name="orders")
        assert exc.stack_name == "orders"
        assert exc.original_error is None


class TestIsAuthError:
    """Tests for is_auth_error function."""

    def test_regular_exception_not_auth(self):
        assert is_auth_error(ValueError("Some error")) is False

    def test_aws_access_denied(self):
        assert is_auth_error(client_error('AccessDenied')) is True

    def test_expired_token(self):
        assert is_auth_error(client_error('ExpiredToken')) is True

    def test_throttling_not_auth(self):
        assert is_auth_error(client_error('Throttling')) is False

    def test_wrapped_error_unwrapped(self):
        exc = CredentialError("boom", account_id="1", original_error=client_error('AccessDenied'))
        assert is_auth_error(exc) is True

    def test_wrapped_without_cause(self):
        assert is_auth_error(CredentialError("boom", account_id="1")) is False

    def test_get_error_code(self):
        assert get_error_code(client_error('ValidationError')) == 'ValidationError'
        assert get_error_code(ValueError("x")) == ''


# =============================================================================
# ProgressTracker Tests
# =============================================================================

class TestProgressTracker:
    """Tests for ProgressTracker outside a TTY."""

    def test_plain_counters(self, capsys):
        with ProgressTracker("CloudFormation", total_accounts=2, show_progress=False) as tracker:
            tracker.start_account("111111111111", "prod")
            tracker.add_stacks(4)
            tracker.complete_account("111111111111", entity_count=7)
            tracker.start_account("222222222222")
            tracker.complete_account("222222222222", failed=True)

        assert tracker.completed_accounts == 2
        assert tracker.failed_accounts == 1
        assert tracker.total_stacks == 4
        assert tracker.total_entities == 7

        output = capsys.readouterr().out
        assert "CloudFormation Refresh Complete" in output
        assert "Failed Accounts: 1" in output

    def test_concurrent_updates(self):
        tracker = ProgressTracker("CloudFormation", total_accounts=100, show_progress=False)

        def work():
            for _ in range(100):
                tracker.add_stacks(1)

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert tracker.total_stacks == 800
