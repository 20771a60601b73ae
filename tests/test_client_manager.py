import pytest

from backupservice.client_manager import BackupClient, ClientManager
from backupservice.models import AerospikeCluster


class FakeAerospikeClient:
    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1


class FakeFactory:
    def __init__(self, should_fail=False):
        self.should_fail = should_fail
        self.created = []

    def __call__(self, cluster):
        if self.should_fail:
            raise RuntimeError("failed to connect to aerospike")
        client = FakeAerospikeClient()
        self.created.append(client)
        return client


@pytest.fixture
def cluster():
    return AerospikeCluster(cluster_label="test")


def test_get_client_reuses_existing(cluster):
    factory = FakeFactory()
    manager = ClientManager(factory)
    client = manager.get_client(cluster)
    client2 = manager.get_client(cluster)
    assert client is client2
    assert len(factory.created) == 1


def test_get_client_fails(cluster):
    manager = ClientManager(FakeFactory(should_fail=True))
    with pytest.raises(ConnectionError, match="cannot create backup client"):
        manager.get_client(cluster)
    assert not manager.is_cached(cluster)


def test_create_client():
    factory = FakeFactory()
    manager = ClientManager(factory)
    client = manager.create_client(AerospikeCluster())
    assert client.aerospike_client is factory.created[0]
    assert client.id is None


def test_create_client_options():
    manager = ClientManager(FakeFactory())
    client = manager.create_client(AerospikeCluster(cluster_label="label", max_parallel_scans=4))
    assert client.id == "label"
    assert client.max_parallel_scans == 4


def test_create_client_errors():
    manager = ClientManager(FakeFactory(should_fail=True))
    with pytest.raises(ConnectionError, match="failed to connect to aerospike"):
        manager.create_client(AerospikeCluster())


def test_close(cluster):
    manager = ClientManager(FakeFactory())
    client = manager.get_client(cluster)
    assert manager.is_cached(cluster)
    manager.close(client)
    assert not manager.is_cached(cluster)
    assert client.aerospike_client.closed == 1


def test_close_multiple(cluster):
    manager = ClientManager(FakeFactory())
    manager.get_client(cluster)
    client = manager.get_client(cluster)

    manager.close(client)
    assert manager.is_cached(cluster)
    assert client.aerospike_client.closed == 0

    manager.close(client)
    assert not manager.is_cached(cluster)
    assert client.aerospike_client.closed == 1


def test_close_not_existing():
    manager = ClientManager(FakeFactory())
    aerospike_client = FakeAerospikeClient()
    manager.close(BackupClient(aerospike_client=aerospike_client))
    assert aerospike_client.closed == 1


def test_clusters_are_kept_apart():
    manager = ClientManager(FakeFactory())
    first = manager.get_client(AerospikeCluster(cluster_label="same"))
    second = manager.get_client(AerospikeCluster(cluster_label="same"))
    assert first is not second