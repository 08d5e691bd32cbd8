"""
Concurrent account scanning.

Accounts are scanned on a bounded thread pool; regions and stacks inside one
account are walked sequentially because every page fetch depends on the
cursor of the previous one. A failure inside one account is caught at that
account's boundary and never reaches its siblings.
"""
import logging
import threading
import time
from concurrent.futures import ALL_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .constants import DEFAULT_MAX_CONCURRENCY
from .credentials import CredentialChainResolver
from .entities import EntityBuilder
from .models import Account, BuildResult, DependencyEdge, Entity
from .scanner import ScanStats, SkippedStack, StackScanner
from .utils import CredentialError, ProgressTracker, get_error_code, is_auth_error

logger = logging.getLogger(__name__)


@dataclass
class AccountResult:
    """What one account contributed to the cycle."""
    account: Account
    build: BuildResult = field(default_factory=BuildResult)
    stacks_scanned: int = 0
    stacks_out_of_scope: int = 0
    skipped_stacks: List[SkippedStack] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class SnapshotCollector:
    """
    Thread-safe accumulation of entities and edges from account workers.

    Once closed, late contributions from abandoned workers are discarded.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entities: List[Entity] = []
        self._edges: List[DependencyEdge] = []
        self._results: Dict[str, AccountResult] = {}
        self._closed = False

    def contribute(self, result: AccountResult) -> bool:
        """Add an account's result. Returns False if the collector was already closed."""
        with self._lock:
            if self._closed:
                return False
            self._entities.extend(result.build.entities)
            self._edges.extend(result.build.edges)
            self._results[result.account.id] = result
            return True

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def entities(self) -> List[Entity]:
        with self._lock:
            return list(self._entities)

    @property
    def edges(self) -> List[DependencyEdge]:
        with self._lock:
            return list(self._edges)

    @property
    def results(self) -> Dict[str, AccountResult]:
        with self._lock:
            return dict(self._results)


@dataclass
class CycleOutcome:
    """Everything run_cycle collected, plus whether every account settled."""
    entities: List[Entity]
    edges: List[DependencyEdge]
    results: Dict[str, AccountResult]
    accounts_total: int
    complete: bool
    timed_out: bool = False
    duration_seconds: float = 0.0
    # Abandoned account scans still running after a timeout
    stragglers: List[Future] = field(default_factory=list)

    @property
    def failed_accounts(self) -> List[AccountResult]:
        return [r for r in self.results.values() if r.failed]


def scan_account(
    account: Account,
    regions: Sequence[str],
    resolver: CredentialChainResolver,
    scanner: StackScanner,
    builder: EntityBuilder,
    abandon: Optional[threading.Event] = None
) -> AccountResult:
    """
    Resolve credentials and scan every region of one account.

    Never raises: a failure ends the account's scan and is recorded in
    AccountResult.error, keeping whatever was built before it.
    """
    result = AccountResult(account=account)
    try:
        credentials = resolver.resolve(account.id)
        for region in regions:
            if abandon is not None and abandon.is_set():
                result.error = "abandoned: cycle timed out"
                break
            stats = ScanStats()
            try:
                for scanned in scanner.scan(account, region, credentials, stats):
                    result.build.extend(builder.build(scanned))
                    if abandon is not None and abandon.is_set():
                        result.error = "abandoned: cycle timed out"
                        break
            finally:
                result.stacks_scanned += stats.stacks_scanned
                result.stacks_out_of_scope += stats.stacks_out_of_scope
                result.skipped_stacks.extend(stats.skipped)
            logger.info(f"[{account.id}/{region}] Scanned {stats.stacks_scanned} stacks "
                        f"({stats.stacks_out_of_scope} out of scope, {len(stats.skipped)} skipped)")
    except CredentialError as e:
        logger.warning(f"Failed to assume role in account {account.id} ({account.name}): {e}")
        result.error = str(e)
    except Exception as e:
        if is_auth_error(e):
            logger.error(f"Authorization error scanning account {account.id} ({account.name}): {e}")
            logger.error("Check that the destination role allows cloudformation:DescribeStacks, "
                         "GetTemplate and ListStackResources.")
            if get_error_code(e) in ('ExpiredToken', 'ExpiredTokenException'):
                resolver.invalidate(account.id)
        else:
            logger.error(f"Failed to scan account {account.id} ({account.name}): {e}")
        result.error = str(e)
    return result


def run_cycle(
    accounts: Sequence[Account],
    regions: Sequence[str],
    resolver: CredentialChainResolver,
    scanner: StackScanner,
    builder: EntityBuilder,
    max_workers: int = DEFAULT_MAX_CONCURRENCY,
    timeout: Optional[float] = None,
    tracker: Optional[ProgressTracker] = None
) -> CycleOutcome:
    """
    Scan all accounts with at most max_workers running at once.

    Args:
        accounts: Accounts to scan
        regions: Regions scanned in every account
        resolver: Credential chain resolver
        scanner: Stack scanner
        builder: Entity builder applied to each scanned stack
        max_workers: Accounts scanned in parallel
        timeout: Seconds after which unfinished accounts are abandoned
        tracker: Optional ProgressTracker for UI updates

    Returns:
        CycleOutcome. ``complete`` is True only if every account settled
        (succeeded or failed) before the timeout.
    """
    collector = SnapshotCollector()
    abandon = threading.Event()
    started = time.monotonic()

    def worker(account: Account) -> AccountResult:
        if tracker:
            tracker.start_account(account.id, account.name)
        result = scan_account(account, regions, resolver, scanner, builder, abandon)
        if not collector.contribute(result):
            logger.warning(f"Discarding late result for account {account.id}: cycle already closed")
        elif tracker:
            tracker.add_stacks(result.stacks_scanned)
            tracker.complete_account(account.id, len(result.build.entities), failed=result.failed)
        return result

    logger.info(f"Scanning {len(accounts)} accounts across {len(regions)} regions "
                f"(max_workers={max_workers})")

    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="account-scan")
    futures = {executor.submit(worker, account): account for account in accounts}
    done, not_done = wait(futures, timeout=timeout, return_when=ALL_COMPLETED)

    timed_out = bool(not_done)
    stragglers: List[Future] = []
    if timed_out:
        abandon.set()
        stragglers = [f for f in not_done if not f.cancel()]
        logger.error(f"Cycle timed out after {timeout}s with {len(not_done)} accounts unfinished: "
                     f"{', '.join(sorted(futures[f].id for f in not_done))}")
    collector.close()
    executor.shutdown(wait=not timed_out, cancel_futures=True)

    for future in done:
        # scan_account never raises; anything here is a bug in the worker itself
        exc = future.exception()
        if exc is not None:
            logger.error(f"Worker for account {futures[future].id} crashed: {exc}")

    results = collector.results
    complete = not timed_out and len(results) == len(accounts)
    outcome = CycleOutcome(
        entities=collector.entities,
        edges=collector.edges,
        results=results,
        accounts_total=len(accounts),
        complete=complete,
        timed_out=timed_out,
        duration_seconds=time.monotonic() - started,
        stragglers=stragglers,
    )
    logger.info(f"Cycle scanned {len(results)}/{len(accounts)} accounts, "
                f"{len(outcome.failed_accounts)} failed, {len(outcome.entities)} entities built")
    return outcome
