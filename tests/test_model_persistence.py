"""
test_model_persistence.py
~~~~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for SQLite-based network persistence.
"""

import os
import pickle
import sqlite3

import numpy as np
import pytest

from digitconv.network import ConvNetwork
from digitconv.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    get_network_metadata,
    delete_old_networks,
    ModelDatabase
)


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def network():
    """Create a randomly initialised network."""
    return ConvNetwork.initialize(seed=0)


def age_network(db_dir, network_id, modifier):
    """Move a stored network's creation time back by an SQLite modifier."""
    conn = sqlite3.connect(os.path.join(db_dir, "networks.db"))
    conn.execute(
        "UPDATE networks SET created_at = datetime('now', ?) WHERE network_id = ?",
        (modifier, network_id)
    )
    conn.commit()
    conn.close()


@pytest.mark.unit
class TestModelPersistence:
    """Test basic model persistence operations."""

    def test_save_network_creates_database(self, network, temp_db_dir):
        """Test that saving a network creates the database file."""
        success = save_network(network, "test_network_1", model_dir=temp_db_dir)

        assert success is True
        assert os.path.exists(f"{temp_db_dir}/networks.db")

    def test_save_network_creates_missing_directory(self, network, tmp_path):
        model_dir = str(tmp_path / "nested" / "models")

        assert save_network(network, "nested", model_dir=model_dir) is True
        assert os.path.isdir(model_dir)

    def test_save_network_with_metadata(self, network, temp_db_dir):
        """Test that network metadata is saved correctly."""
        save_network(network, "measured", model_dir=temp_db_dir, accuracy=0.85)

        metadata = get_network_metadata("measured", temp_db_dir)
        assert metadata is not None
        assert metadata['network_id'] == "measured"
        assert metadata['accuracy'] == 0.85
        assert metadata['architecture'] == network.architecture

    def test_save_rejects_invalid_accuracy(self, network, temp_db_dir):
        assert save_network(network, "bad", model_dir=temp_db_dir, accuracy=1.5) is False
        assert get_network_metadata("bad", temp_db_dir) is None

    def test_save_rejects_empty_id(self, network, temp_db_dir):
        assert save_network(network, "", model_dir=temp_db_dir) is False

    def test_load_network_preserves_weights(self, network, temp_db_dir):
        """Test that saved weights are preserved after loading."""
        save_network(network, "weights", model_dir=temp_db_dir)
        loaded = load_network("weights", temp_db_dir)

        assert isinstance(loaded, ConvNetwork)
        for original, restored in zip(network.weights, loaded.weights):
            assert np.array_equal(original, restored)
        for original, restored in zip(network.biases, loaded.biases):
            assert np.array_equal(original, restored)

    def test_loaded_network_gives_same_output(self, network, temp_db_dir):
        image = np.random.default_rng(5).uniform(size=(1, 28, 28))
        save_network(network, "output", model_dir=temp_db_dir)

        loaded = load_network("output", temp_db_dir)

        assert np.array_equal(loaded.feedforward(image), network.feedforward(image))

    def test_load_nonexistent_network(self, temp_db_dir):
        """Test that loading a non-existent network returns None."""
        assert load_network("nonexistent", temp_db_dir) is None

    def test_load_rejects_mismatched_shapes(self, network, temp_db_dir):
        db = ModelDatabase(db_path=os.path.join(temp_db_dir, "networks.db"))
        db.save_network_to_db(network, "corrupt")

        network.filters = np.zeros((8, 3, 3))
        conn = sqlite3.connect(db.db_path)
        conn.execute(
            "UPDATE networks SET network_data = ? WHERE network_id = ?",
            (pickle.dumps(network), "corrupt")
        )
        conn.commit()
        conn.close()

        assert load_network("corrupt", temp_db_dir) is None

    def test_list_saved_networks_empty(self, temp_db_dir):
        """Test listing networks when database is empty."""
        assert list_saved_networks(temp_db_dir) == []

    def test_list_saved_networks_includes_metadata(self, network, temp_db_dir):
        """Test that listed networks include all expected metadata fields."""
        save_network(network, "listed", model_dir=temp_db_dir, accuracy=0.75)

        networks = list_saved_networks(temp_db_dir)

        assert len(networks) == 1
        listed = networks[0]
        assert listed['network_id'] == "listed"
        assert listed['accuracy'] == 0.75
        assert listed['weights_shape'] == [[8, 5, 5], [10, 1152]]
        assert listed['biases_shape'] == [[8], [10]]
        assert 'created_at' in listed
        assert 'updated_at' in listed

    def test_delete_network_success(self, network, temp_db_dir):
        """Test successful network deletion."""
        save_network(network, "delete_test", model_dir=temp_db_dir)

        assert delete_network("delete_test", temp_db_dir) is True
        assert load_network("delete_test", temp_db_dir) is None

    def test_delete_nonexistent_network(self, temp_db_dir):
        """Test that deleting a non-existent network returns False."""
        assert delete_network("nonexistent", temp_db_dir) is False

    def test_update_network(self, network, temp_db_dir):
        """Test that saving a network with the same ID updates it."""
        save_network(network, "update_test", model_dir=temp_db_dir)
        age_network(temp_db_dir, "update_test", '-1 day')

        replacement = ConvNetwork.initialize(seed=1)
        save_network(replacement, "update_test", model_dir=temp_db_dir, accuracy=0.88)

        networks = list_saved_networks(temp_db_dir)
        assert len(networks) == 1
        assert networks[0]['accuracy'] == 0.88
        # Creation time survives the update
        assert networks[0]['created_at'] < networks[0]['updated_at']

        loaded = load_network("update_test", temp_db_dir)
        assert np.array_equal(loaded.filters, replacement.filters)


@pytest.mark.integration
class TestPersistenceIntegration:
    """Integration tests for model persistence."""

    def test_multiple_networks_coexist(self, temp_db_dir):
        seeds = {"first": 1, "second": 2, "third": 3}
        for network_id, seed in seeds.items():
            save_network(ConvNetwork.initialize(seed=seed), network_id, model_dir=temp_db_dir)

        assert len(list_saved_networks(temp_db_dir)) == 3
        for network_id, seed in seeds.items():
            loaded = load_network(network_id, temp_db_dir)
            expected = ConvNetwork.initialize(seed=seed)
            assert np.array_equal(loaded.dense_weights, expected.dense_weights)

    def test_float32_network_round_trip(self, temp_db_dir):
        network = ConvNetwork.initialize(seed=4, dtype=np.float32)
        save_network(network, "single", model_dir=temp_db_dir)

        loaded = load_network("single", temp_db_dir)

        assert loaded.dtype == np.float32
        assert loaded.output.dtype == np.float32


class TestDeleteOldNetworks:
    """Tests for cleanup of old networks."""

    def test_delete_old_networks_basic(self, network, temp_db_dir):
        save_network(network, "old", model_dir=temp_db_dir)
        age_network(temp_db_dir, "old", '-3 days')

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 1
        assert load_network("old", temp_db_dir) is None

    def test_delete_old_networks_preserves_recent(self, network, temp_db_dir):
        save_network(network, "recent", model_dir=temp_db_dir)

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0
        assert load_network("recent", temp_db_dir) is not None

    def test_delete_old_networks_mixed_ages(self, network, temp_db_dir):
        old_ids = ["old_1", "old_2"]
        recent_ids = ["recent_1", "recent_2"]
        for network_id in old_ids + recent_ids:
            save_network(network, network_id, model_dir=temp_db_dir)
        for network_id in old_ids:
            age_network(temp_db_dir, network_id, '-3 days')

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == len(old_ids)
        for network_id in old_ids:
            assert load_network(network_id, temp_db_dir) is None
        for network_id in recent_ids:
            assert load_network(network_id, temp_db_dir) is not None

    def test_delete_old_networks_empty_db(self, temp_db_dir):
        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0

    def test_delete_old_networks_negative_days(self, temp_db_dir):
        with pytest.raises(ValueError) as exc_info:
            delete_old_networks(days=-1, model_dir=temp_db_dir)
        assert "non-negative" in str(exc_info.value)

    def test_delete_old_networks_zero_days(self, network, temp_db_dir):
        save_network(network, "hour_old", model_dir=temp_db_dir)
        age_network(temp_db_dir, "hour_old", '-1 hour')

        assert delete_old_networks(days=0, model_dir=temp_db_dir) == 1

    def test_model_database_method(self, network, temp_db_dir):
        db = ModelDatabase(db_path=os.path.join(temp_db_dir, "networks.db"))
        db.save_network_to_db(network, "direct")
        age_network(temp_db_dir, "direct", '-3 days')

        assert db.delete_old_networks_from_db(days=2) == 1
        assert db.load_network_from_db("direct") is None

    def test_delete_old_networks_fractional_days(self, network, temp_db_dir):
        save_network(network, "thirty_hours", model_dir=temp_db_dir)
        age_network(temp_db_dir, "thirty_hours", '-30 hours')

        assert delete_old_networks(days=1.5, model_dir=temp_db_dir) == 0
        assert delete_old_networks(days=1, model_dir=temp_db_dir) == 1
