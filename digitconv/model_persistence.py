"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite store for trained weight sets of the digit classifier.

Each row holds one pickled ``ConvNetwork`` plus its architecture as JSON,
so listings never need to unpickle weights. Stored networks are rebuilt
through ``ConvNetwork`` on load, which re-checks every tensor shape.
"""

import sqlite3
import pickle
import json
import os
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager
import numpy as np

from digitconv.network import ConvNetwork

logger = logging.getLogger(__name__)

_METADATA_COLUMNS = 'network_id, architecture, accuracy, created_at, updated_at'


class NetworkEncoder(json.JSONEncoder):
    """JSON encoder that turns numpy arrays and scalars into plain values."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        'network_id': row['network_id'],
        'architecture': json.loads(row['architecture']),
        'accuracy': row['accuracy'],
        'created_at': row['created_at'],
        'updated_at': row['updated_at']
    }


def _tensor_shapes(architecture: Dict[str, int]) -> Dict[str, List[List[int]]]:
    """Weight and bias shapes implied by a stored architecture."""
    filters = architecture['num_filters']
    size = architecture['filter_size']
    classes = architecture['num_classes']
    return {
        'weights_shape': [[filters, size, size], [classes, architecture['flat_size']]],
        'biases_shape': [[filters], [classes]]
    }


class ModelDatabase:
    """
    One SQLite file of saved weight sets, keyed by network id.

    Columns: network_id, architecture (JSON), network_data (pickle),
    accuracy (optional, measured elsewhere), created_at, updated_at.
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        self.db_path = db_path
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        self._initialize_schema()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a connection that commits on success and rolls back on error."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        with self._get_connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    network_data BLOB NOT NULL,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            conn.execute(
                'CREATE INDEX IF NOT EXISTS idx_created_at '
                'ON networks(created_at DESC)'
            )

    def save_network_to_db(
        self,
        network: ConvNetwork,
        network_id: str,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Insert or replace the weight set stored under ``network_id``.

        Replacing keeps the original ``created_at`` and bumps ``updated_at``.

        Raises:
            ValueError: If accuracy is outside [0, 1]
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        architecture = json.dumps(network.architecture, cls=NetworkEncoder)
        with self._get_connection() as conn:
            conn.execute('''
                INSERT INTO networks
                (network_id, architecture, network_data, accuracy, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    network_data = excluded.network_data,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (network_id, architecture, pickle.dumps(network), accuracy))

        logger.info(f"Saved network '{network_id}' (accuracy={accuracy})")
        return True

    def load_network_from_db(self, network_id: str) -> Optional[ConvNetwork]:
        """
        Rebuild the stored network, or return None if the id is unknown.

        Raises:
            ConfigurationError: If the stored tensors have the wrong shapes
        """
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None

        stored = pickle.loads(row['network_data'])
        network = ConvNetwork(
            stored.filters,
            stored.filter_bias,
            stored.dense_weights,
            stored.dense_bias,
            dtype=stored.dtype
        )
        logger.info(f"Loaded network '{network_id}'")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """Metadata and tensor shapes of every stored network, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                f'SELECT {_METADATA_COLUMNS} FROM networks '
                'ORDER BY created_at DESC'
            ).fetchall()

        networks = []
        for row in rows:
            metadata = _row_to_metadata(row)
            metadata.update(_tensor_shapes(metadata['architecture']))
            networks.append(metadata)

        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                f'SELECT {_METADATA_COLUMNS} FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"Metadata for network '{network_id}' not found")
            return None
        return _row_to_metadata(row)

    def delete_network_from_db(self, network_id: str) -> bool:
        """Return True if a row was deleted."""
        with self._get_connection() as conn:
            deleted = conn.execute(
                'DELETE FROM networks WHERE network_id = ?', (network_id,)
            ).rowcount > 0

        if deleted:
            logger.info(f"Deleted network '{network_id}'")
        else:
            logger.warning(f"Could not delete network '{network_id}': not found")
        return deleted

    def delete_old_networks_from_db(self, days: float) -> int:
        """
        Delete networks whose ``created_at`` is more than ``days`` days ago.

        Fractional days are compared as-is, so 1.5 means 36 hours.

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            deleted = conn.execute(
                "DELETE FROM networks "
                "WHERE julianday('now') - julianday(created_at) > ?",
                (float(days),)
            ).rowcount

        logger.info(f"Deleted {deleted} network(s) older than {days} day(s)")
        return deleted


def _get_db(model_dir: str) -> ModelDatabase:
    return ModelDatabase(db_path=os.path.join(model_dir, 'networks.db'))


def _valid_id(network_id: Any) -> bool:
    if network_id and isinstance(network_id, str):
        return True
    logger.error("Invalid network_id: must be a non-empty string")
    return False


# ============================================================================
# MODULE-LEVEL HELPERS
# ============================================================================
#
# These wrap ModelDatabase for callers that only care about success: storage
# errors are logged and reported as False / None / [] / -1.

def save_network(
    network: ConvNetwork,
    network_id: str,
    model_dir: str = 'models',
    accuracy: Optional[float] = None
) -> bool:
    """
    Store ``network`` under ``network_id`` in ``model_dir/networks.db``.

    Example:
        >>> save_network(ConvNetwork.initialize(seed=0), "my_network")
        True
    """
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).save_network_to_db(network, network_id, accuracy)
    except ValueError as e:
        logger.error(f"Rejected network '{network_id}': {e}")
    except (AttributeError, pickle.PicklingError) as e:
        logger.error(f"Could not serialize network '{network_id}': {e}")
    except sqlite3.Error as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
    return False


def load_network(
    network_id: str,
    model_dir: str = 'models'
) -> Optional[ConvNetwork]:
    """Return the stored network, or None if missing or unreadable."""
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).load_network_from_db(network_id)
    except (pickle.UnpicklingError, AttributeError, ValueError) as e:
        logger.error(f"Stored network '{network_id}' is unusable: {e}")
    except sqlite3.Error as e:
        logger.error(f"Database error loading network '{network_id}': {e}")
    return None


def list_saved_networks(model_dir: str = 'models') -> List[Dict[str, Any]]:
    try:
        return _get_db(model_dir).list_networks_from_db()
    except (sqlite3.Error, json.JSONDecodeError) as e:
        logger.error(f"Could not list networks: {e}")
    return []


def delete_network(network_id: str, model_dir: str = 'models') -> bool:
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
    return False


def delete_old_networks(days: float = 2, model_dir: str = 'models') -> int:
    """
    Delete networks older than ``days`` (fractions allowed).

    Returns:
        int: Number of deleted networks, or -1 on a database error

    Raises:
        ValueError: If days is negative
    """
    if days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    try:
        return _get_db(model_dir).delete_old_networks_from_db(days)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting old networks: {e}")
    return -1


def get_network_metadata(
    network_id: str,
    model_dir: str = 'models'
) -> Optional[Dict[str, Any]]:
    """Metadata of one network without unpickling its weights."""
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)
    except (sqlite3.Error, json.JSONDecodeError) as e:
        logger.error(f"Could not read metadata for '{network_id}': {e}")
    return None
