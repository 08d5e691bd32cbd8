"""
Refresh cycle entry point.

One call to ``RefreshEngine.run_once`` is one refresh cycle: enumerate the
organization, scan every selected account, and, only if every account
settled before the timeout, replace the catalog's entity set with the
result. Cadence is owned by whatever calls run_once (cron, a container
scheduler). Nothing is persisted between cycles.
"""
import logging
import threading
from concurrent.futures import Future
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import boto3

from .config import Settings
from .constants import SNAPSHOT_FILENAME
from .credentials import CredentialChainResolver
from .emitter import CatalogSink, HttpCatalogSink, JsonFileSink, ReconciliationEmitter
from .entities import EntityBuilder, assemble_snapshot, builder_from_settings
from .models import Account
from .orchestrator import CycleOutcome, run_cycle
from .organizations import list_accounts, select_accounts
from .scanner import StackScanner
from .utils import (
    CredentialError,
    CycleInProgressError,
    DiscoveryError,
    ProgressTracker,
    SinkError,
    generate_run_id,
    get_timestamp,
    join_output_path,
)

logger = logging.getLogger(__name__)

AccountSource = Callable[[], Iterable[Account]]
TrackerFactory = Callable[[int], ProgressTracker]


@dataclass
class AccountFailure:
    account_id: str
    account_name: str
    reason: str


@dataclass
class CycleReport:
    """Outcome of one refresh cycle."""
    run_id: str
    started_at: str
    finished_at: str = ""
    accounts_total: int = 0
    accounts_succeeded: int = 0
    accounts_failed: List[AccountFailure] = field(default_factory=list)
    stacks_scanned: int = 0
    stacks_skipped: int = 0
    entity_count: int = 0
    complete: bool = False
    timed_out: bool = False
    emitted: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RefreshEngine:
    """
    Runs refresh cycles, never more than one at a time.

    Args:
        settings: Validated Settings
        resolver: Credential chain resolver shared by all cycles
        scanner: Stack scanner
        sink: Catalog sink receiving the full mutation
        regions: Regions scanned in every account (default: settings.regions)
        account_source: Returns the organization's accounts (default: Organizations
            ListAccounts with the top-level credentials)
        builder: Entity builder (default: built from settings)
        tracker_factory: Creates a ProgressTracker for a cycle, given the account count
    """

    def __init__(
        self,
        settings: Settings,
        resolver: CredentialChainResolver,
        scanner: StackScanner,
        sink: CatalogSink,
        regions: Optional[Sequence[str]] = None,
        account_source: Optional[AccountSource] = None,
        builder: Optional[EntityBuilder] = None,
        tracker_factory: Optional[TrackerFactory] = None
    ):
        self.settings = settings
        self.resolver = resolver
        self.scanner = scanner
        self.emitter = ReconciliationEmitter(sink, settings.provider_key)
        self.regions = list(regions if regions is not None else settings.regions)
        if not self.regions:
            raise ValueError("RefreshEngine needs at least one region to scan")
        self.account_source = account_source or self._organization_accounts
        self.builder = builder or builder_from_settings(settings)
        self.tracker_factory = tracker_factory
        self._cycle_lock = threading.Lock()
        self._stragglers: List[Future] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        regions: Optional[Sequence[str]] = None,
        base_session: Optional[boto3.Session] = None,
        sink: Optional[CatalogSink] = None,
        tracker_factory: Optional[TrackerFactory] = None
    ) -> "RefreshEngine":
        """Wire an engine with the default resolver, scanner and sink."""
        resolver = CredentialChainResolver(
            destination_role_name=settings.destination_role_name,
            source_role_arn=settings.source_role_arn,
            base_session=base_session,
            external_id=settings.external_id,
            session_name=settings.session_name,
        )
        if sink is None:
            if settings.sink_url:
                sink = HttpCatalogSink(settings.sink_url, token=settings.sink_token)
            else:
                sink = JsonFileSink(join_output_path(settings.output, SNAPSHOT_FILENAME))
        return cls(
            settings,
            resolver,
            StackScanner(),
            sink,
            regions=regions,
            tracker_factory=tracker_factory,
        )

    def _organization_accounts(self) -> Iterable[Account]:
        return list_accounts(self.resolver.top_level_session())

    def run_once(self) -> CycleReport:
        """
        Run one refresh cycle.

        Refresh failures (account discovery, sink) are logged and reported in
        the returned CycleReport; they never propagate.

        Raises:
            CycleInProgressError: If another cycle, or an account scan abandoned
                by a timed-out cycle, is still running
        """
        if not self._cycle_lock.acquire(blocking=False):
            raise CycleInProgressError("A refresh cycle is already in progress")
        try:
            running = [f for f in self._stragglers if not f.done()]
            if running:
                raise CycleInProgressError(
                    f"{len(running)} account scans from a timed-out cycle are still running"
                )
            self._stragglers = []
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleReport:
        report = CycleReport(run_id=generate_run_id(), started_at=get_timestamp())
        logger.info(f"Starting refresh cycle {report.run_id}")

        try:
            accounts = select_accounts(
                self.account_source(),
                skip_accounts=self.settings.skip_accounts,
                include_suspended=self.settings.include_suspended,
            )
        except (DiscoveryError, CredentialError) as e:
            logger.error(f"Refresh cycle {report.run_id} aborted, no accounts to scan: {e}")
            report.error = str(e)
            report.finished_at = get_timestamp()
            return report

        report.accounts_total = len(accounts)
        logger.info(f"Selected {len(accounts)} accounts for scanning")

        outcome = self._scan(accounts)
        self._stragglers = outcome.stragglers
        self._record_outcome(report, outcome)

        if not outcome.complete:
            logger.error(f"Refresh cycle {report.run_id} incomplete "
                         f"({len(outcome.results)}/{len(accounts)} accounts settled); "
                         f"discarding results, nothing emitted")
            report.finished_at = get_timestamp()
            return report

        snapshot = assemble_snapshot(outcome.entities, outcome.edges)
        report.entity_count = len(snapshot)
        try:
            self.emitter.emit(snapshot)
            report.emitted = True
        except SinkError as e:
            logger.error(f"Failed to emit catalog mutation: {e}")
            report.error = str(e)

        report.finished_at = get_timestamp()
        logger.info(f"Refresh cycle {report.run_id} finished: {report.entity_count} entities, "
                    f"{len(report.accounts_failed)} failed accounts, emitted={report.emitted}")
        return report

    def _scan(self, accounts: List[Account]) -> CycleOutcome:
        kwargs = dict(
            max_workers=self.settings.max_concurrency,
            timeout=self.settings.cycle_timeout,
        )
        if self.tracker_factory is None:
            return run_cycle(accounts, self.regions, self.resolver, self.scanner, self.builder, **kwargs)
        with self.tracker_factory(len(accounts)) as tracker:
            return run_cycle(accounts, self.regions, self.resolver, self.scanner, self.builder,
                             tracker=tracker, **kwargs)

    @staticmethod
    def _record_outcome(report: CycleReport, outcome: CycleOutcome) -> None:
        report.complete = outcome.complete
        report.timed_out = outcome.timed_out
        for result in outcome.results.values():
            report.stacks_scanned += result.stacks_scanned
            report.stacks_skipped += len(result.skipped_stacks)
            if result.failed:
                report.accounts_failed.append(AccountFailure(
                    account_id=result.account.id,
                    account_name=result.account.name,
                    reason=result.error or "",
                ))
            else:
                report.accounts_succeeded += 1
        report.accounts_failed.sort(key=lambda failure: failure.account_id)
