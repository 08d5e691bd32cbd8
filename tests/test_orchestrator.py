"""
Tests for the concurrency orchestrator.

Covers:
- Bounded account concurrency
- Fault isolation between accounts (credentials, scan errors, crashes)
- Partial contribution of a failing account
- Cycle timeout marking the cycle incomplete
"""
import os
import sys
import threading
import time
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stacklib.constants import TYPE_FUNCTION, TYPE_STACK
from stacklib.credentials import ScopedCredentials
from stacklib.entities import EntityBuilder
from stacklib.models import (
    Account,
    ResourceSummary,
    ScannedStack,
    StackRecord,
    TemplateDocument,
)
from stacklib.orchestrator import AccountResult, SnapshotCollector, run_cycle, scan_account
from stacklib.utils import CredentialError


def make_accounts(count):
    return [Account(id=f"{i:012d}", name=f"account-{i}", status="ACTIVE") for i in range(1, count + 1)]


def scanned_stack(account_id, region, name="app"):
    stack = StackRecord(
        stack_id=f"arn:aws:cloudformation:{region}:{account_id}:stack/{name}/id",
        stack_name=name,
        status="CREATE_COMPLETE",
        account_id=account_id,
        region=region,
    )
    template = TemplateDocument.from_template({
        "Resources": {"Fn": {"Type": "AWS::Lambda::Function", "Properties": {"Runtime": "python3.12"}}}
    })
    return ScannedStack(
        stack=stack,
        resources=[ResourceSummary("Fn", f"{name}-fn", "AWS::Lambda::Function")],
        template=template,
        role_arn=f"arn:aws:iam::{account_id}:role/CatalogStackReader",
    )


class FakeResolver:
    """Resolver handing out dummy credentials, failing for chosen accounts."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.invalidated = []

    def resolve(self, account_id):
        if account_id in self.failing:
            raise CredentialError(f"Failed to assume role in account {account_id}", account_id=account_id)
        return ScopedCredentials("AKIA", "secret", "token", None,
                                 f"arn:aws:iam::{account_id}:role/CatalogStackReader")

    def invalidate(self, account_id=None):
        self.invalidated.append(account_id)


class FakeScanner:
    """
    Scanner yielding one stack per account/region.

    Tracks how many scans run at the same time. ``behaviour`` maps an
    account id to a callable run before yielding (sleep, raise, block).
    """

    def __init__(self, delay=0.0, behaviour=None):
        self.delay = delay
        self.behaviour = behaviour or {}
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def scan(self, account, region, credentials, stats=None):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay)
            action = self.behaviour.get(account.id)
            if action is not None:
                action()
            if stats is not None:
                stats.stacks_scanned += 1
        finally:
            with self._lock:
                self.active -= 1
        yield scanned_stack(account.id, region)


def raiser(exc):
    def _raise():
        raise exc
    return _raise


# =============================================================================
# scan_account Tests
# =============================================================================

class TestScanAccount:
    """Tests for scan_account."""

    def test_success(self):
        account = make_accounts(1)[0]

        result = scan_account(account, ["us-east-1", "eu-west-1"], FakeResolver(), FakeScanner(), EntityBuilder())

        assert not result.failed
        assert result.stacks_scanned == 2
        stacks = [e for e in result.build.entities if e.entity_type == TYPE_STACK]
        assert {e.metadata.annotations["stack-catalog.io/region"] for e in stacks} == {"us-east-1", "eu-west-1"}

    def test_credential_error_recorded(self):
        account = make_accounts(1)[0]

        result = scan_account(account, ["us-east-1"], FakeResolver(failing=[account.id]),
                              FakeScanner(), EntityBuilder())

        assert result.failed
        assert result.build.entities == []
        assert account.id in result.error

    def test_scan_error_keeps_completed_regions(self):
        account = make_accounts(1)[0]
        calls = {"n": 0}

        def second_region_fails():
            calls["n"] += 1
            if calls["n"] == 2:
                raise ClientError({"Error": {"Code": "Throttling", "Message": "slow down"}}, "DescribeStacks")

        scanner = FakeScanner(behaviour={account.id: second_region_fails})

        result = scan_account(account, ["us-east-1", "eu-west-1"], FakeResolver(), scanner, EntityBuilder())

        assert result.failed
        assert "slow down" in result.error
        stacks = [e for e in result.build.entities if e.entity_type == TYPE_STACK]
        assert len(stacks) == 1

    def test_expired_token_invalidates_cache(self):
        account = make_accounts(1)[0]
        expired = ClientError({"Error": {"Code": "ExpiredToken", "Message": "expired"}}, "DescribeStacks")
        resolver = FakeResolver()

        result = scan_account(account, ["us-east-1"], resolver,
                              FakeScanner(behaviour={account.id: raiser(expired)}), EntityBuilder())

        assert result.failed
        assert resolver.invalidated == [account.id]

    def test_abandoned_before_start(self):
        account = make_accounts(1)[0]
        abandon = threading.Event()
        abandon.set()

        result = scan_account(account, ["us-east-1"], FakeResolver(), FakeScanner(), EntityBuilder(), abandon)

        assert result.failed
        assert result.build.entities == []


# =============================================================================
# SnapshotCollector Tests
# =============================================================================

class TestSnapshotCollector:
    """Tests for SnapshotCollector."""

    def test_concurrent_contributions(self):
        collector = SnapshotCollector()
        accounts = make_accounts(50)

        def contribute(account):
            result = scan_account(account, ["us-east-1"], FakeResolver(), FakeScanner(), EntityBuilder())
            collector.contribute(result)

        threads = [threading.Thread(target=contribute, args=(a,)) for a in accounts]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # stack + function + runtime per account
        assert len(collector.entities) == 150
        assert len(collector.results) == 50

    def test_closed_collector_discards(self):
        collector = SnapshotCollector()
        collector.close()

        assert collector.contribute(AccountResult(account=make_accounts(1)[0])) is False
        assert collector.results == {}


# =============================================================================
# run_cycle Tests
# =============================================================================

class TestRunCycle:
    """Tests for run_cycle."""

    def test_bounded_concurrency(self):
        scanner = FakeScanner(delay=0.05)

        outcome = run_cycle(make_accounts(10), ["us-east-1"], FakeResolver(), scanner, EntityBuilder(),
                            max_workers=3)

        assert outcome.complete
        assert scanner.max_active <= 3
        assert scanner.max_active >= 2
        assert len(outcome.results) == 10

    def test_all_accounts_contribute(self):
        outcome = run_cycle(make_accounts(5), ["us-east-1"], FakeResolver(), FakeScanner(), EntityBuilder())

        functions = [e for e in outcome.entities if e.entity_type == TYPE_FUNCTION]
        assert len(functions) == 5
        assert outcome.accounts_total == 5
        assert outcome.failed_accounts == []
        assert not outcome.timed_out

    def test_credential_error_isolated(self):
        accounts = make_accounts(4)
        failing = accounts[2].id

        outcome = run_cycle(accounts, ["us-east-1"], FakeResolver(failing=[failing]), FakeScanner(),
                            EntityBuilder())

        assert outcome.complete
        assert [r.account.id for r in outcome.failed_accounts] == [failing]
        scanned_accounts = {
            e.metadata.annotations["stack-catalog.io/accountId"]
            for e in outcome.entities if e.entity_type == TYPE_STACK
        }
        assert scanned_accounts == {a.id for a in accounts} - {failing}

    def test_unexpected_error_isolated(self):
        accounts = make_accounts(3)
        scanner = FakeScanner(behaviour={accounts[0].id: raiser(RuntimeError("bug"))})

        outcome = run_cycle(accounts, ["us-east-1"], FakeResolver(), scanner, EntityBuilder())

        assert outcome.complete
        assert len(outcome.failed_accounts) == 1
        assert len([e for e in outcome.entities if e.entity_type == TYPE_STACK]) == 2

    def test_no_accounts(self):
        outcome = run_cycle([], ["us-east-1"], FakeResolver(), FakeScanner(), EntityBuilder())

        assert outcome.complete
        assert outcome.entities == []

    def test_timeout_marks_cycle_incomplete(self):
        accounts = make_accounts(3)
        release = threading.Event()
        scanner = FakeScanner(behaviour={accounts[1].id: lambda: release.wait(5)})

        try:
            outcome = run_cycle(accounts, ["us-east-1"], FakeResolver(), scanner, EntityBuilder(),
                                max_workers=3, timeout=0.5)
        finally:
            release.set()

        assert outcome.timed_out
        assert not outcome.complete
        assert accounts[1].id not in outcome.results
        assert len(outcome.results) == 2
        assert len(outcome.stragglers) == 1
        # The abandoned scan finishes later but contributes nothing
        outcome.stragglers[0].result(5)
        assert accounts[1].id not in outcome.results

    def test_tracker_updates(self):
        tracker = Mock()

        run_cycle(make_accounts(2), ["us-east-1"], FakeResolver(failing=["000000000002"]), FakeScanner(),
                  EntityBuilder(), tracker=tracker)

        assert tracker.start_account.call_count == 2
        failed_flags = sorted(c.kwargs["failed"] for c in tracker.complete_account.call_args_list)
        assert failed_flags == [False, True]

    @pytest.mark.parametrize("max_workers", [1, 3])
    def test_results_independent_of_concurrency(self, max_workers):
        outcome = run_cycle(make_accounts(6), ["us-east-1", "eu-west-1"], FakeResolver(), FakeScanner(),
                            EntityBuilder(), max_workers=max_workers)

        assert len(outcome.entities) == 6 * 2 * 3
