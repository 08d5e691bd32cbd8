"""
Catalog reconciliation.

Every cycle hands the catalog a full-replacement mutation: the complete set
of entities this provider currently knows about, scoped by the provider key.
The catalog removes whatever the provider emitted before and is missing from
the new set, so stacks that were deleted (or moved out of scope) disappear
without any explicit delete.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from .constants import DEFAULT_PROVIDER_KEY, MUTATION_TYPE_FULL
from .models import RefreshSnapshot
from .utils import SinkError, write_json

logger = logging.getLogger(__name__)


class CatalogSink(ABC):
    """Destination of full-replacement mutations."""

    @abstractmethod
    def apply_mutation(self, mutation: Dict[str, Any]) -> None:
        """
        Apply one mutation.

        Raises:
            SinkError: If the mutation was not accepted
        """


class JsonFileSink(CatalogSink):
    """Writes the latest mutation to a JSON document (local path or s3:// URL)."""

    def __init__(self, path: str):
        self.path = path

    def apply_mutation(self, mutation: Dict[str, Any]) -> None:
        try:
            write_json(mutation, self.path)
        except Exception as e:
            raise SinkError(f"Failed to write catalog mutation to {self.path}: {e}") from e


class HttpCatalogSink(CatalogSink):
    """
    POSTs mutations to a catalog HTTP endpoint.

    Args:
        url: Endpoint receiving the mutation document
        token: Optional bearer token
        timeout: Request timeout in seconds
    """

    def __init__(self, url: str, token: Optional[str] = None, timeout: int = 60):
        self.url = url
        self.token = token
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def apply_mutation(self, mutation: Dict[str, Any]) -> None:
        # json.dumps with default=str handles datetimes that requests.post(json=) cannot
        body = json.dumps(mutation, default=str)
        try:
            resp = requests.post(self.url, data=body, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise SinkError(f"Catalog sink unreachable at {self.url}: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise SinkError(f"Catalog sink rejected mutation (HTTP {resp.status_code}): {resp.text[:200]}")
        logger.info(f"Catalog sink accepted mutation (HTTP {resp.status_code})")


class MemorySink(CatalogSink):
    """Keeps every applied mutation in memory."""

    def __init__(self):
        self.mutations: List[Dict[str, Any]] = []

    def apply_mutation(self, mutation: Dict[str, Any]) -> None:
        self.mutations.append(mutation)

    @property
    def last(self) -> Optional[Dict[str, Any]]:
        return self.mutations[-1] if self.mutations else None


class ReconciliationEmitter:
    """Turns a cycle's snapshot into one full mutation and hands it to the sink."""

    def __init__(self, sink: CatalogSink, provider_key: str = DEFAULT_PROVIDER_KEY):
        self.sink = sink
        self.provider_key = provider_key

    def build_mutation(self, snapshot: RefreshSnapshot) -> Dict[str, Any]:
        return {
            'type': MUTATION_TYPE_FULL,
            'providerKey': self.provider_key,
            'entities': [
                {'locationKey': self.provider_key, 'entity': entity.to_dict()}
                for entity in snapshot.entities
            ],
        }

    def emit(self, snapshot: RefreshSnapshot) -> Dict[str, Any]:
        """
        Replace the provider's entity set with the snapshot.

        An empty snapshot is emitted as-is: a complete cycle that found no
        stacks clears the provider's entities.

        Raises:
            SinkError: If the sink did not accept the mutation
        """
        mutation = self.build_mutation(snapshot)
        logger.info(f"Emitting full mutation with {len(snapshot)} entities "
                    f"(provider key {self.provider_key})")
        self.sink.apply_mutation(mutation)
        return mutation
