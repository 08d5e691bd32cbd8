"""
Utility functions for the stack catalog provider.

Logging Level Standards:
------------------------
- ERROR: Failures that lose a whole scope (the cycle, one account)
         "Failed to list organization accounts: {e}"
- WARNING: Partial failures that shrink scope, degraded behaviour
           "Skipping stack {name} in {account}/{region}: {e}"
- INFO: Progress messages, counts
        "Found 12 in-scope stacks in 111111111111/us-east-1"
- DEBUG: Per-item decisions that don't affect overall collection
         "Dropping stack {name}: status DELETE_COMPLETE is out of scope"
"""
import hashlib
import json
import logging
import os
import re
import sys
import threading
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .constants import LOG_FILENAME_PREFIX

if TYPE_CHECKING:
    from rich.progress import TaskID

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    exceptions: tuple = (Exception,)
) -> Callable[[F], F]:
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts (default: 3)
        min_wait: Minimum wait time between retries in seconds (default: 1)
        max_wait: Maximum wait time between retries in seconds (default: 60)
        exceptions: Tuple of exception types to retry on (default: all Exceptions)

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(max_attempts=5, exceptions=(EndpointConnectionError,))
        def call_api():
            ...
    """
    def decorator(func: F) -> F:
        return retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)  # type: ignore[return-value]
    return decorator


# =============================================================================
# Errors
# =============================================================================

class StackCatalogError(Exception):
    """Base class for all errors raised by the stack catalog provider."""


class DiscoveryError(StackCatalogError):
    """The organization account list could not be produced. Fatal to the cycle."""


class CredentialError(StackCatalogError):
    """Role assumption for one account failed. Scoped to that account."""

    def __init__(self, message: str, account_id: str, original_error: Optional[Exception] = None):
        self.account_id = account_id
        self.original_error = original_error
        super().__init__(message)


class StackFetchError(StackCatalogError):
    """A single stack could not be read. Scoped to that stack."""

    def __init__(self, message: str, stack_name: str, original_error: Optional[Exception] = None):
        self.stack_name = stack_name
        self.original_error = original_error
        super().__init__(message)


class TemplateError(StackFetchError):
    """A stack's template body is missing or cannot be parsed."""


class SinkError(StackCatalogError):
    """The catalog sink rejected or could not receive a mutation."""


class CycleInProgressError(StackCatalogError):
    """A refresh cycle was requested while another one is still running."""


# AWS error codes that indicate auth/permission issues
AWS_AUTH_ERROR_CODES = {
    'AccessDenied', 'AccessDeniedException', 'UnauthorizedAccess',
    'UnauthorizedOperation', 'InvalidClientTokenId', 'ExpiredToken',
    'ExpiredTokenException', 'AuthFailure', 'InvalidIdentityToken',
    'CredentialsNotFound', 'SignatureDoesNotMatch',
}


def get_error_code(exc: BaseException) -> str:
    """Return the AWS error code of a botocore ClientError, or '' for anything else."""
    response = getattr(exc, 'response', None)
    if not isinstance(response, dict):
        return ''
    return response.get('Error', {}).get('Code', '')


def is_auth_error(exc: BaseException) -> bool:
    """
    Check if an exception represents an authentication/authorization error.

    Wrapped errors (CredentialError, StackFetchError) are unwrapped through
    their ``original_error`` first.
    """
    original = getattr(exc, 'original_error', None)
    if original is not None:
        return is_auth_error(original)
    if type(exc).__name__ == 'ClientError':
        return get_error_code(exc) in AWS_AUTH_ERROR_CODES
    return False


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress tracker for refresh cycles with rich display.

    Falls back to simple print statements if stdout is not a TTY
    (e.g., when running under a scheduler or piping output). Counter
    updates are guarded by a lock because account workers report from
    their own threads.

    Usage:
        with ProgressTracker("CloudFormation", total_accounts=12) as tracker:
            tracker.start_account("111111111111", "prod")
            ...
            tracker.complete_account("111111111111", entity_count=42)
    """

    def __init__(
        self,
        provider: str,
        total_accounts: int = 0,
        show_progress: bool = True
    ):
        self.provider = provider
        self.total_accounts = total_accounts
        self.show_progress = show_progress and sys.stdout.isatty()

        # Counters
        self.completed_accounts = 0
        self.failed_accounts = 0
        self.total_stacks = 0
        self.total_entities = 0

        self._lock = threading.Lock()
        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._main_task: Optional["TaskID"] = None

    def __enter__(self):
        if self.show_progress:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._main_task = self._progress.add_task(
                f"{self.provider} Refresh", total=self.total_accounts or 1
            )
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print(f"{self.provider} Refresh Starting")
            print(f"{'='*60}")
            if self.total_accounts:
                print(f"Accounts: {self.total_accounts}")
            print()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._progress is not None:
            assert self._console is not None
            self._progress.stop()
            self._console.print()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def start_account(self, account_id: str, account_name: str = ""):
        """Mark the start of processing an account."""
        display = f"{account_id} ({account_name})" if account_name else account_id
        if self._progress is not None:
            assert self._main_task is not None
            self._progress.update(
                self._main_task,
                description=f"{self.provider} Account: {display}"
            )
        else:
            print(f"  [{display}] Scanning...")

    def add_stacks(self, count: int):
        """Add scanned stacks to the running total."""
        with self._lock:
            self.total_stacks += count

    def complete_account(self, account_id: str, entity_count: int = 0, failed: bool = False):
        """Mark an account as settled, successfully or not."""
        with self._lock:
            self.completed_accounts += 1
            self.total_entities += entity_count
            if failed:
                self.failed_accounts += 1
            running_total = self.total_entities
        if self._progress is not None:
            assert self._main_task is not None
            self._progress.update(self._main_task, advance=1)
        else:
            state = "Failed" if failed else "Complete"
            print(f"  [{account_id}] {state} - Running total: {running_total:,} entities")

    def _print_summary_rich(self):
        """Print a formatted summary using rich."""
        table = Table(title=f"{self.provider} Refresh Summary", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Accounts", f"{self.completed_accounts}/{self.total_accounts}")
        table.add_row("Failed Accounts", str(self.failed_accounts))
        table.add_row("Stacks", f"{self.total_stacks:,}")
        table.add_row("Entities", f"{self.total_entities:,}")

        assert self._console is not None
        self._console.print(Panel(table))

    def _print_summary_plain(self):
        """Print a plain text summary."""
        print(f"\n{'='*60}")
        print(f"{self.provider} Refresh Complete")
        print(f"{'='*60}")
        print(f"  Accounts:        {self.completed_accounts}/{self.total_accounts}")
        print(f"  Failed Accounts: {self.failed_accounts}")
        print(f"  Stacks:          {self.total_stacks:,}")
        print(f"  Entities:        {self.total_entities:,}")
        print()


def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def mask_account_id(arn: str) -> str:
    """
    Mask the account ID in an AWS ARN for safe logging.

    Example: arn:aws:iam::123456789012:role/MyRole
          -> arn:aws:iam::***:role/MyRole
    """
    return re.sub(r'(\d{12})', '***', arn)


def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """
    Hash a sensitive ID using consistent hashing.

    Uses first 8 chars of SHA256 for uniqueness with minimal collision risk.

    Example: 123456789012 -> acc-a3f8b2c1 (with prefix "acc-")
    """
    if not value:
        return value
    hash_val = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{hash_val}" if prefix else hash_val


def tags_to_dict(tags: Any) -> Dict[str, str]:
    """
    Convert an AWS tag list to a dictionary.

    Supports:
    - AWS format: [{"Key": "owner", "Value": "team-orders"}]
    - Plain dicts (returned unchanged)
    """
    if not tags:
        return {}

    if isinstance(tags, dict):
        return tags

    if isinstance(tags, list):
        return {tag.get("Key", ""): tag.get("Value", "") for tag in tags if tag.get("Key")}

    return {}


# Patterns for redacting sensitive data in log messages (compiled for performance)
_LOG_REDACT_PATTERNS = [
    # AWS ARNs - preserve structure (partition:service:region:account:resource)
    # Must come before account ID pattern to match full ARN first
    (re.compile(r'(arn:aws[-a-z]*):([a-z0-9-]+):([a-z0-9-]*):(\d{12}):([^\s,\]}"\']+)'),
     lambda m: f"{m.group(1)}:{m.group(2)}:{m.group(3) or '*'}:{hash_sensitive_id(m.group(4))}:{hash_sensitive_id(m.group(5))}"),
    # AWS account IDs (12 digits, but not timestamps or other numbers)
    (re.compile(r'\b(\d{12})\b(?!\d)'), lambda m: hash_sensitive_id(m.group(1), 'acc-')),
]


def redact_log_message(message: str) -> str:
    """
    Redact account IDs and ARNs from a log message using consistent hashing.

    The same ID always produces the same hash, so redacted log files can
    still be correlated across lines and runs.
    """
    if not message:
        return message

    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)

    return message


class RedactingFilter(logging.Filter):
    """Logging filter that redacts account IDs and ARNs from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact sensitive data from the log record message."""
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write logs to a file in this directory

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(threadName)s] %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # botocore is chatty at DEBUG
    logging.getLogger('botocore').setLevel(max(numeric_level, logging.INFO))
    logging.getLogger('urllib3').setLevel(max(numeric_level, logging.INFO))

    if output_dir and not output_dir.startswith("s3://"):
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"{LOG_FILENAME_PREFIX}_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        # Persisted logs never carry raw account ids
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


def write_json(data: Any, filepath: str) -> None:
    """Write data to a JSON file (local path or s3:// URL) with secure permissions."""
    if filepath.startswith("s3://"):
        write_to_s3(data, filepath)
        return

    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)

    # Owner read/write only: the inventory names every account and stack
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        f = os.fdopen(fd, 'w')
    except Exception:
        os.close(fd)
        raise
    # f owns fd from here on
    with f:
        json.dump(data, f, indent=2, default=str)
    logger.info(f"Wrote {filepath}")


def write_to_s3(data: Any, s3_path: str, content_type: str = "application/json") -> None:
    """Write data to an S3 object addressed as s3://bucket/key."""
    import boto3

    path = s3_path[len("s3://"):]
    bucket, _, key = path.partition('/')
    if not bucket or not key:
        raise ValueError(f"Invalid S3 path: {s3_path}")

    body = data if isinstance(data, str) else json.dumps(data, indent=2, default=str)

    s3 = boto3.client('s3')
    s3.put_object(
        Bucket=bucket,
        Key=key,
        Body=body.encode('utf-8'),
        ContentType=content_type,
        ServerSideEncryption='AES256',
    )
    logger.info(f"Wrote {s3_path}")


def join_output_path(base: str, filename: str) -> str:
    """Join an output directory (local or s3://) with a file name."""
    if base.startswith("s3://"):
        return f"{base.rstrip('/')}/{filename}"
    return os.path.join(base, filename)

