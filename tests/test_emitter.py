"""
Tests for the reconciliation emitter and catalog sinks.

Covers:
- Full mutation document shape
- Deletion by omission across consecutive snapshots
- JsonFileSink (local file)
- HttpCatalogSink with requests.post patched
"""
import json
import os
import sys
import tempfile
from unittest.mock import Mock, patch

import pytest
import requests

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stacklib.emitter import HttpCatalogSink, JsonFileSink, MemorySink, ReconciliationEmitter
from stacklib.entities import EntityBuilder, assemble_snapshot
from stacklib.models import (
    RefreshSnapshot,
    ResourceSummary,
    ScannedStack,
    StackRecord,
    TemplateDocument,
)
from stacklib.utils import SinkError

PROVIDER_KEY = "cloudformation-stack-provider"


def snapshot_of(*stack_names):
    """Snapshot holding one stack with one nodejs function per name."""
    builder = EntityBuilder()
    entities, edges = [], []
    for name in stack_names:
        stack = StackRecord(
            stack_id=f"arn:aws:cloudformation:us-east-1:111111111111:stack/{name}/id",
            stack_name=name,
            status="UPDATE_COMPLETE",
            account_id="111111111111",
            region="us-east-1",
        )
        template = TemplateDocument.from_template({
            "Resources": {"Fn": {"Type": "AWS::Lambda::Function", "Properties": {"Runtime": "nodejs18.x"}}}
        })
        result = builder.build(ScannedStack(
            stack=stack,
            resources=[ResourceSummary("Fn", f"{name}-fn", "AWS::Lambda::Function")],
            template=template,
            role_arn="arn:aws:iam::111111111111:role/CatalogStackReader",
        ))
        entities.extend(result.entities)
        edges.extend(result.edges)
    return assemble_snapshot(entities, edges)


def emitted_names(mutation):
    return {item["entity"]["metadata"]["name"] for item in mutation["entities"]}


# =============================================================================
# ReconciliationEmitter Tests
# =============================================================================

class TestReconciliationEmitter:
    """Tests for ReconciliationEmitter."""

    def test_mutation_shape(self):
        snapshot = snapshot_of("orders")

        mutation = ReconciliationEmitter(MemorySink(), PROVIDER_KEY).build_mutation(snapshot)

        assert mutation["type"] == "full"
        assert mutation["providerKey"] == PROVIDER_KEY
        assert len(mutation["entities"]) == 3
        for item in mutation["entities"]:
            assert item["locationKey"] == PROVIDER_KEY
            assert item["entity"]["apiVersion"] == "backstage.io/v1alpha1"
            assert item["entity"]["kind"] == "Resource"

    def test_emit_hands_mutation_to_sink(self):
        sink = MemorySink()
        snapshot = snapshot_of("orders", "billing")

        returned = ReconciliationEmitter(sink, PROVIDER_KEY).emit(snapshot)

        assert sink.mutations == [returned]
        assert emitted_names(sink.last) == set(snapshot.identities())

    def test_deleted_stack_omitted_next_cycle(self):
        sink = MemorySink()
        emitter = ReconciliationEmitter(sink, PROVIDER_KEY)

        emitter.emit(snapshot_of("orders", "billing"))
        emitter.emit(snapshot_of("orders"))

        previous, current = (emitted_names(m) for m in sink.mutations)
        removed = previous - current
        # billing's stack and function vanish; the shared runtime stays
        assert len(removed) == 2
        assert all(name.startswith(("aws-cfn-", "aws-lmb-")) for name in removed)
        assert "aws-lambda-runtime-nodejs18.x" in current

    def test_empty_snapshot_emitted(self):
        sink = MemorySink()

        ReconciliationEmitter(sink, PROVIDER_KEY).emit(RefreshSnapshot())

        assert sink.last == {"type": "full", "providerKey": PROVIDER_KEY, "entities": []}

    def test_sink_error_propagates(self):
        sink = Mock()
        sink.apply_mutation.side_effect = SinkError("rejected")

        with pytest.raises(SinkError):
            ReconciliationEmitter(sink, PROVIDER_KEY).emit(snapshot_of("orders"))


# =============================================================================
# JsonFileSink Tests
# =============================================================================

class TestJsonFileSink:
    """Tests for JsonFileSink."""

    def test_writes_mutation(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "catalog_mutation.json")
            mutation = ReconciliationEmitter(JsonFileSink(path), PROVIDER_KEY).emit(snapshot_of("orders"))

            with open(path) as f:
                assert json.load(f) == mutation

    def test_unwritable_path(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = os.path.join(tmpdir, "file")
            with open(blocker, "w") as f:
                f.write("x")

            with pytest.raises(SinkError):
                JsonFileSink(os.path.join(blocker, "mutation.json")).apply_mutation({"type": "full"})


# =============================================================================
# HttpCatalogSink Tests
# =============================================================================

class TestHttpCatalogSink:
    """Tests for HttpCatalogSink."""

    @patch("stacklib.emitter.requests.post")
    def test_posts_mutation(self, mock_post):
        mock_post.return_value = Mock(status_code=202, text="accepted")
        sink = HttpCatalogSink("https://catalog.example.com/api/mutations", token="tok", timeout=30)

        sink.apply_mutation({"type": "full", "entities": []})

        args, kwargs = mock_post.call_args
        assert args[0] == "https://catalog.example.com/api/mutations"
        assert json.loads(kwargs["data"]) == {"type": "full", "entities": []}
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert kwargs["timeout"] == 30

    @patch("stacklib.emitter.requests.post")
    def test_no_token_no_auth_header(self, mock_post):
        mock_post.return_value = Mock(status_code=200, text="")

        HttpCatalogSink("https://catalog").apply_mutation({"type": "full"})

        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    @patch("stacklib.emitter.requests.post")
    def test_non_2xx_raises(self, mock_post):
        mock_post.return_value = Mock(status_code=500, text="internal error")

        with pytest.raises(SinkError, match="HTTP 500"):
            HttpCatalogSink("https://catalog").apply_mutation({"type": "full"})

    @patch("stacklib.emitter.requests.post")
    def test_transport_failure_raises(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(SinkError, match="unreachable"):
            HttpCatalogSink("https://catalog").apply_mutation({"type": "full"})
