"""
test_model_persistence.py
~~~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for the SQLite model registry.
"""

import os
import sqlite3
import sys

import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ffnet.network import Network
from ffnet.model_persistence import (
    save_network,
    load_network,
    load_network_data,
    list_saved_networks,
    delete_network,
    get_network_metadata,
    delete_old_networks,
    ModelDatabase
)


SAMPLES = [
    ([0.0, 0.5, 1.0], [1.0, 0.0]),
    ([1.0, 0.5, 0.0], [0.0, 1.0]),
]


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def simple_network():
    """Create a simple 3-layer network for testing."""
    return Network([3, 4, 2], 0.5, rng=np.random.default_rng(11))


@pytest.fixture
def trained_network(simple_network):
    """Create a simple network with some training applied."""
    for _ in range(10):
        for inputs, targets in SAMPLES:
            simple_network.train(inputs, targets)
    return simple_network


def age_network(db_dir, network_id, modifier):
    """Move a network's created_at back, e.g. modifier='-3 days'."""
    conn = sqlite3.connect(os.path.join(db_dir, "networks.db"))
    try:
        conn.execute('''
            UPDATE networks
            SET created_at = datetime('now', ?)
            WHERE network_id = ?
        ''', (modifier, network_id))
        conn.commit()
    finally:
        conn.close()


@pytest.mark.unit
class TestModelPersistence:
    """Test basic model persistence operations."""

    def test_save_network_creates_database(self, simple_network, temp_db_dir):
        """Saving a network creates the database file."""
        success = save_network(
            simple_network,
            "test_network_1",
            model_dir=temp_db_dir,
            trained=False
        )

        assert success is True
        assert os.path.exists(f"{temp_db_dir}/networks.db")

    def test_save_network_with_metadata(self, trained_network, temp_db_dir):
        """Network metadata is saved correctly."""
        network_id = "trained_network_1"
        loss = trained_network.evaluate(SAMPLES)

        success = save_network(
            trained_network,
            network_id,
            model_dir=temp_db_dir,
            trained=True,
            loss=loss
        )

        assert success is True

        metadata = get_network_metadata(network_id, temp_db_dir)
        assert metadata is not None
        assert metadata['network_id'] == network_id
        assert metadata['trained'] is True
        assert metadata['loss'] == pytest.approx(loss)
        assert metadata['architecture'] == [3, 4, 2]
        assert metadata['weights_shape'] == [[4, 3], [2, 4]]

    def test_save_rejects_negative_loss(self, simple_network, temp_db_dir):
        assert save_network(simple_network, "bad_loss",
                            model_dir=temp_db_dir, loss=-0.1) is False
        assert get_network_metadata("bad_loss", temp_db_dir) is None

    def test_save_rejects_empty_id(self, simple_network, temp_db_dir):
        assert save_network(simple_network, "", model_dir=temp_db_dir) is False

    def test_load_network_returns_network(self, simple_network, temp_db_dir):
        """Loading returns a Network with the saved topology."""
        save_network(simple_network, "test_network_2", model_dir=temp_db_dir)
        loaded_network = load_network("test_network_2", temp_db_dir)

        assert isinstance(loaded_network, Network)
        assert loaded_network.sizes == simple_network.sizes
        assert loaded_network.learning_rate == simple_network.learning_rate

    def test_load_nonexistent_network(self, temp_db_dir):
        assert load_network("nonexistent", temp_db_dir) is None

    def test_load_preserves_weights(self, trained_network, temp_db_dir):
        """Saved weights and biases come back bit for bit."""
        save_network(trained_network, "test_network_3", model_dir=temp_db_dir)
        loaded_network = load_network("test_network_3", temp_db_dir)

        for original, loaded in zip(trained_network.layers,
                                    loaded_network.layers):
            for original_unit, loaded_unit in zip(original, loaded):
                assert np.array_equal(original_unit.weights,
                                      loaded_unit.weights)
                assert original_unit.bias == loaded_unit.bias

    def test_stored_blob_is_binary_model(self, trained_network, temp_db_dir):
        save_network(trained_network, "blob_test", model_dir=temp_db_dir)
        data = load_network_data("blob_test", temp_db_dir)
        assert data == trained_network.to_bytes()

    def test_corrupt_blob_loads_as_none(self, simple_network, temp_db_dir):
        save_network(simple_network, "corrupt", model_dir=temp_db_dir)
        conn = sqlite3.connect(os.path.join(temp_db_dir, "networks.db"))
        conn.execute(
            "UPDATE networks SET network_data = ? WHERE network_id = ?",
            (b'\x00\x01\x02', "corrupt")
        )
        conn.commit()
        conn.close()

        assert load_network("corrupt", temp_db_dir) is None

    def test_list_saved_networks_empty(self, temp_db_dir):
        assert list_saved_networks(temp_db_dir) == []

    def test_list_saved_networks(self, simple_network, temp_db_dir):
        save_network(simple_network, "net1", model_dir=temp_db_dir,
                     trained=True, loss=0.02)
        save_network(simple_network, "net2", model_dir=temp_db_dir,
                     trained=False)

        networks = list_saved_networks(temp_db_dir)

        assert len(networks) == 2
        assert {net['network_id'] for net in networks} == {"net1", "net2"}

    def test_list_saved_networks_includes_metadata(self, simple_network,
                                                   temp_db_dir):
        save_network(
            simple_network,
            "metadata_test",
            model_dir=temp_db_dir,
            trained=True,
            loss=0.25
        )

        network = list_saved_networks(temp_db_dir)[0]

        assert network['network_id'] == "metadata_test"
        assert network['architecture'] == [3, 4, 2]
        assert network['trained'] is True
        assert network['loss'] == 0.25
        assert 'created_at' in network
        assert 'updated_at' in network
        assert network['weights_shape'] == [[4, 3], [2, 4]]

    def test_delete_network_success(self, simple_network, temp_db_dir):
        save_network(simple_network, "delete_test", model_dir=temp_db_dir)
        assert load_network("delete_test", temp_db_dir) is not None

        assert delete_network("delete_test", temp_db_dir) is True
        assert load_network("delete_test", temp_db_dir) is None

    def test_delete_nonexistent_network(self, temp_db_dir):
        ModelDatabase(db_path=f'{temp_db_dir}/networks.db')
        assert delete_network("nonexistent", temp_db_dir) is False

    def test_update_network(self, simple_network, temp_db_dir):
        """Saving with the same ID replaces the stored network."""
        network_id = "update_test"
        save_network(simple_network, network_id, model_dir=temp_db_dir,
                     trained=False)
        assert get_network_metadata(network_id, temp_db_dir)['trained'] is False

        for inputs, targets in SAMPLES:
            simple_network.train(inputs, targets)
        save_network(simple_network, network_id, model_dir=temp_db_dir,
                     trained=True, loss=0.12)

        metadata = get_network_metadata(network_id, temp_db_dir)
        assert metadata['trained'] is True
        assert metadata['loss'] == 0.12
        assert load_network_data(network_id, temp_db_dir) == \
            simple_network.to_bytes()
        assert len(list_saved_networks(temp_db_dir)) == 1

    def test_update_keeps_created_at(self, simple_network, temp_db_dir):
        save_network(simple_network, "aged", model_dir=temp_db_dir)
        age_network(temp_db_dir, "aged", '-3 days')
        created_at = get_network_metadata("aged", temp_db_dir)['created_at']

        save_network(simple_network, "aged", model_dir=temp_db_dir)
        assert get_network_metadata("aged", temp_db_dir)['created_at'] == \
            created_at


@pytest.mark.integration
class TestPersistenceIntegration:
    """Integration tests for model persistence."""

    def test_save_load_train_cycle(self, simple_network, temp_db_dir):
        """Complete cycle: save, load, train, save again."""
        network_id = "cycle_test"
        save_network(simple_network, network_id, model_dir=temp_db_dir,
                     trained=False)

        loaded_network = load_network(network_id, temp_db_dir)
        for _ in range(50):
            for inputs, targets in SAMPLES:
                loaded_network.train(inputs, targets)
        loss = loaded_network.evaluate(SAMPLES)

        save_network(loaded_network, network_id, model_dir=temp_db_dir,
                     trained=True, loss=loss)

        final_network = load_network(network_id, temp_db_dir)
        metadata = get_network_metadata(network_id, temp_db_dir)

        assert final_network.evaluate(SAMPLES) == loss
        assert metadata['trained'] is True
        assert metadata['loss'] == loss

    def test_multiple_networks_coexist(self, temp_db_dir):
        networks_to_create = [
            ([784, 30, 10], "wide_network"),
            ([3, 4, 2], "simple_network"),
            ([10, 20, 20, 10], "deep_network")
        ]

        for architecture, network_id in networks_to_create:
            save_network(Network(architecture, 0.5), network_id,
                         model_dir=temp_db_dir)

        assert len(list_saved_networks(temp_db_dir)) == len(networks_to_create)

        for architecture, network_id in networks_to_create:
            loaded = load_network(network_id, temp_db_dir)
            assert loaded is not None
            assert loaded.sizes == architecture

    def test_repeated_operations(self, simple_network, temp_db_dir):
        """The connection context manager commits every operation."""
        network_ids = [f"repeat_{i}" for i in range(5)]

        for network_id in network_ids:
            save_network(simple_network, network_id, model_dir=temp_db_dir)

        loaded_networks = [load_network(nid, temp_db_dir) for nid in network_ids]
        assert all(net is not None for net in loaded_networks)

        for network_id in network_ids:
            assert delete_network(network_id, temp_db_dir) is True

        assert list_saved_networks(temp_db_dir) == []


class TestDeleteOldNetworks:
    """Tests for cleanup of old networks."""

    def test_delete_old_networks_basic(self, simple_network, temp_db_dir):
        save_network(simple_network, "old", model_dir=temp_db_dir)
        age_network(temp_db_dir, "old", '-3 days')

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 1
        assert load_network("old", temp_db_dir) is None

    def test_delete_old_networks_preserves_recent(self, simple_network,
                                                  temp_db_dir):
        save_network(simple_network, "recent", model_dir=temp_db_dir)

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0
        assert load_network("recent", temp_db_dir) is not None

    def test_delete_old_networks_mixed_ages(self, simple_network,
                                            temp_db_dir):
        old_ids = ["old_1", "old_2"]
        recent_ids = ["recent_1", "recent_2"]

        for network_id in old_ids + recent_ids:
            save_network(simple_network, network_id, model_dir=temp_db_dir)
        for network_id in old_ids:
            age_network(temp_db_dir, network_id, '-3 days')

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 2
        for network_id in old_ids:
            assert load_network(network_id, temp_db_dir) is None
        for network_id in recent_ids:
            assert load_network(network_id, temp_db_dir) is not None

    def test_delete_old_networks_custom_days(self, simple_network,
                                             temp_db_dir):
        save_network(simple_network, "five_days", model_dir=temp_db_dir)
        age_network(temp_db_dir, "five_days", '-5 days')

        assert delete_old_networks(days=7, model_dir=temp_db_dir) == 0
        assert load_network("five_days", temp_db_dir) is not None

        assert delete_old_networks(days=3, model_dir=temp_db_dir) == 1
        assert load_network("five_days", temp_db_dir) is None

    def test_delete_old_networks_empty_db(self, temp_db_dir):
        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0

    def test_delete_old_networks_negative_days(self, temp_db_dir):
        with pytest.raises(ValueError) as exc_info:
            delete_old_networks(days=-1, model_dir=temp_db_dir)
        assert "non-negative" in str(exc_info.value)

    def test_delete_old_networks_zero_days(self, simple_network, temp_db_dir):
        save_network(simple_network, "hour_old", model_dir=temp_db_dir)
        age_network(temp_db_dir, "hour_old", '-1 hour')

        assert delete_old_networks(days=0, model_dir=temp_db_dir) == 1
        assert load_network("hour_old", temp_db_dir) is None

    def test_model_database_delete_old_networks_method(self, temp_db_dir):
        db = ModelDatabase(db_path=os.path.join(temp_db_dir, "networks.db"))
        db.save_network_to_db(Network([3, 4, 2], 0.5), "test_network",
                              trained=False)
        age_network(temp_db_dir, "test_network", '-3 days')

        assert db.delete_old_networks_from_db(days=2) == 1
        assert db.load_network_from_db("test_network") is None
