"""Creation, sharing and closing of backup clients per cluster."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from backupservice.models import AerospikeCluster


@dataclass(eq=False)
class BackupClient:
    """A database client prepared for backup and restore work."""

    aerospike_client: Any
    id: str | None = None
    max_parallel_scans: int | None = None

    def close(self) -> None:
        """Close the underlying database client."""
        self.aerospike_client.close()


@dataclass
class _ClientInfo:
    client: BackupClient
    count: int


class ClientManager:
    """Hands out one shared backup client per cluster, counting its users.

    ``factory`` is called with an :class:`AerospikeCluster` and returns a
    connected database client, or raises if it cannot connect.
    """

    def __init__(self, factory: Callable[[AerospikeCluster], Any]):
        self._factory = factory
        self._lock = threading.Lock()
        self._clients: dict[AerospikeCluster, _ClientInfo] = {}

    def get_client(self, cluster: AerospikeCluster) -> BackupClient:
        """Return the cached client of ``cluster``, creating it if needed."""
        with self._lock:
            info = self._clients.get(cluster)
            if info is not None:
                info.count += 1
                return info.client
            try:
                client = self.create_client(cluster)
            except Exception as exc:
                raise ConnectionError(f"cannot create backup client: {exc}") from exc
            self._clients[cluster] = _ClientInfo(client=client, count=1)
            return client

    def create_client(self, cluster: AerospikeCluster) -> BackupClient:
        """Create a new, uncached backup client for ``cluster``."""
        try:
            aerospike_client = self._factory(cluster)
        except Exception as exc:
            raise ConnectionError(f"failed to connect to aerospike cluster, {exc}") from exc
        return BackupClient(
            aerospike_client=aerospike_client,
            id=cluster.cluster_label,
            max_parallel_scans=cluster.max_parallel_scans,
        )

    def close(self, client: BackupClient) -> None:
        """Release ``client``; it is closed once its last user releases it.

        A client that is not managed here is closed straight away.
        """
        with self._lock:
            for cluster, info in self._clients.items():
                if info.client is client:
                    info.count -= 1
                    if info.count == 0:
                        info.client.close()
                        del self._clients[cluster]
                    return
        client.close()

    def is_cached(self, cluster: AerospikeCluster) -> bool:
        """Tell whether a client for ``cluster`` is currently held."""
        with self._lock:
            return cluster in self._clients