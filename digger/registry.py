"""
Per-run cache of region-scoped S3 clients.

S3 only serves a bucket's objects from its home region, so every region that
shows up in the catalog needs its own client. Clients are created lazily the
first time a worker asks for a region, and exactly once per region even when
several workers ask at the same time.

Locking:
- ``_lock`` guards the client map and the per-region lock map. It is only
  held for dictionary lookups, never while a client is being constructed.
- one lock per region serializes construction for that region, so two
  regions can be set up concurrently.
"""
import logging
import threading
from typing import Any, Callable, Dict, List

from .errors import ClientInitError, describe_error

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Any]


class ClientRegistry:
    """
    Thread-safe get-or-create cache mapping region -> client.

    Usage:
        registry = ClientRegistry(lambda region: make_s3_client(region))
        registry.seed('us-east-1', default_client)
        client = registry.get_or_create('eu-west-1')
    """

    def __init__(self, factory: ClientFactory):
        self._factory = factory
        self._clients: Dict[str, Any] = {}
        self._region_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        # Number of factory calls that returned a client
        self.created = 0

    def seed(self, region: str, client: Any) -> None:
        """Register an already constructed client (e.g. the default region's)."""
        with self._lock:
            self._clients[region] = client
        logger.debug(f"Seeded S3 client for {region}")

    def _lock_for(self, region: str) -> threading.Lock:
        with self._lock:
            lock = self._region_locks.get(region)
            if lock is None:
                lock = threading.Lock()
                self._region_locks[region] = lock
            return lock

    def _cached(self, region: str) -> Any:
        with self._lock:
            return self._clients.get(region)

    def get_or_create(self, region: str) -> Any:
        """
        Return the client for ``region``, constructing it on first use.

        Raises:
            ClientInitError: if the factory fails. Nothing is cached, so the
                next call for the same region tries again.
        """
        client = self._cached(region)
        if client is not None:
            return client

        with self._lock_for(region):
            # Another worker may have finished construction while we waited
            client = self._cached(region)
            if client is not None:
                return client

            try:
                client = self._factory(region)
            except Exception as e:
                raise ClientInitError(
                    f"Unable to initialize the S3 client for region {region}: {describe_error(e)}",
                    region=region,
                    original_error=e,
                ) from e

            with self._lock:
                self._clients[region] = client
                self.created += 1

        logger.debug(f"Created S3 client for {region}")
        return client

    def regions(self) -> List[str]:
        with self._lock:
            return sorted(self._clients)

    def __contains__(self, region: object) -> bool:
        with self._lock:
            return region in self._clients

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)
