"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based registry of named networks.
Each network is stored in the binary model format alongside queryable
metadata (architecture, training status, loss).

The module-level helpers never raise on storage problems: they log and
return ``False``, ``None`` or an empty list so the API can map the result
to a status code.
"""

import sqlite3
import json
import os
import logging
from typing import Optional, List, Dict, Any, Iterator
from contextlib import contextmanager

from ffnet.errors import ModelFormatError
from ffnet.network import Network

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = 'models'
DB_FILENAME = 'networks.db'

_SCHEMA = '''
    CREATE TABLE IF NOT EXISTS networks (
        network_id TEXT PRIMARY KEY,
        architecture TEXT NOT NULL,
        network_data BLOB NOT NULL,
        trained INTEGER NOT NULL DEFAULT 0,
        loss REAL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS idx_created_at ON networks(created_at DESC);
'''

_METADATA_QUERY = '''
    SELECT network_id, architecture, trained, loss, created_at, updated_at
    FROM networks
'''


def _weights_shape(architecture: List[int]) -> List[List[int]]:
    """``[units, inputs]`` of every layer for a given architecture."""
    return [
        [architecture[i + 1], architecture[i]]
        for i in range(len(architecture) - 1)
    ]


def _metadata(row: sqlite3.Row) -> Dict[str, Any]:
    architecture = json.loads(row['architecture'])
    return {
        'network_id': row['network_id'],
        'architecture': architecture,
        'weights_shape': _weights_shape(architecture),
        'trained': bool(row['trained']),
        'loss': row['loss'],
        'created_at': row['created_at'],
        'updated_at': row['updated_at']
    }


class ModelDatabase:
    """Saved networks and their metadata in one SQLite file."""

    def __init__(self, db_path: str = os.path.join(DEFAULT_MODEL_DIR,
                                                   DB_FILENAME)):
        self.db_path = db_path
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on success and rolls back on error."""
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

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        loss: Optional[float] = None
    ) -> bool:
        """
        Save a network, replacing any network stored under ``network_id``.

        The first save time is kept on replacement so that
        ``delete_old_networks_from_db`` ages a network from its creation.

        Raises:
            ValueError: If loss is negative
        """
        if loss is not None and loss < 0.0:
            raise ValueError(f"Loss must be non-negative, got {loss}")

        with self._get_connection() as conn:
            conn.execute('''
                INSERT INTO networks
                (network_id, architecture, network_data, trained, loss)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    network_data = excluded.network_data,
                    trained = excluded.trained,
                    loss = excluded.loss,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                json.dumps(network.sizes),
                network.to_bytes(),
                int(bool(trained)),
                loss
            ))

        logger.info(
            f"Saved network '{network_id}' with architecture "
            f"{network.sizes}, trained={trained}, loss={loss}"
        )
        return True

    def load_network_data_from_db(self, network_id: str) -> Optional[bytes]:
        """Encoded model of ``network_id``, or None if it is not stored."""
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None
        return bytes(row['network_data'])

    def load_network_from_db(self, network_id: str) -> Optional[Network]:
        """
        Decode the stored network.

        Raises:
            ModelFormatError: If the stored blob is not a valid model
        """
        data = self.load_network_data_from_db(network_id)
        if data is None:
            return None

        network = Network.from_bytes(data)
        logger.info(f"Loaded network '{network_id}' {network.sizes}")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """Metadata of every stored network, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                _METADATA_QUERY + 'ORDER BY created_at DESC'
            ).fetchall()

        networks = [_metadata(row) for row in rows]
        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        with self._get_connection() as conn:
            deleted = conn.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            ).rowcount > 0

        if deleted:
            logger.info(f"Deleted network '{network_id}'")
        else:
            logger.warning(f"Could not delete network '{network_id}': not found")
        return deleted

    def delete_old_networks_from_db(self, days: float) -> int:
        """
        Delete networks first saved more than ``days`` days ago.

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            deleted = conn.execute(
                "DELETE FROM networks "
                "WHERE julianday('now') - julianday(created_at) > ?",
                (days,)
            ).rowcount

        logger.info(f"Deleted {deleted} network(s) older than {days} day(s)")
        return deleted

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                _METADATA_QUERY + 'WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"Metadata for network '{network_id}' not found")
            return None
        return _metadata(row)


# Shared instance for the default model directory
_db = None


def _get_db(model_dir: str = DEFAULT_MODEL_DIR) -> ModelDatabase:
    global _db
    if model_dir != DEFAULT_MODEL_DIR:
        return ModelDatabase(db_path=os.path.join(model_dir, DB_FILENAME))
    if _db is None:
        _db = ModelDatabase()
    return _db


def _valid_id(network_id: Any) -> bool:
    if network_id and isinstance(network_id, str):
        return True
    logger.error(f"Invalid network_id {network_id!r}: must be a non-empty string")
    return False


def save_network(
    network: Network,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    trained: bool = True,
    loss: Optional[float] = None
) -> bool:
    """
    Store ``network`` under ``network_id`` in the registry at ``model_dir``.

    Example:
        >>> net = Network([2, 3, 1], 0.5)
        >>> save_network(net, "xor", trained=False)
        True
    """
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).save_network_to_db(
            network, network_id, trained, loss
        )
    except ValueError as e:
        logger.error(f"Rejected metadata for network '{network_id}': {e}")
    except sqlite3.Error as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
    except Exception as e:
        logger.exception(f"Unexpected error saving network '{network_id}': {e}")
    return False


def load_network(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Network]:
    """Saved network, or None if it is missing or its blob is corrupt."""
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).load_network_from_db(network_id)
    except ModelFormatError as e:
        logger.error(f"Corrupt model stored for network '{network_id}': {e}")
    except sqlite3.Error as e:
        logger.error(f"Database error loading network '{network_id}': {e}")
    except Exception as e:
        logger.exception(f"Unexpected error loading network '{network_id}': {e}")
    return None


def load_network_data(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[bytes]:
    """Encoded model of a saved network, undecoded."""
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).load_network_data_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error reading network '{network_id}': {e}")
        return None


def list_saved_networks(model_dir: str = DEFAULT_MODEL_DIR) -> List[Dict[str, Any]]:
    """
    Metadata of every saved network, newest first; empty on error.

    Example:
        >>> for net in list_saved_networks():
        ...     print(f"{net['network_id']}: {net['architecture']} {net['loss']}")
    """
    try:
        return _get_db(model_dir).list_networks_from_db()
    except sqlite3.Error as e:
        logger.error(f"Database error listing networks: {e}")
    except json.JSONDecodeError as e:
        logger.error(f"Corrupt architecture column listing networks: {e}")
    except Exception as e:
        logger.exception(f"Unexpected error listing networks: {e}")
    return []


def delete_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR) -> bool:
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
    except Exception as e:
        logger.exception(f"Unexpected error deleting network '{network_id}': {e}")
    return False


def delete_old_networks(days: float = 2,
                        model_dir: str = DEFAULT_MODEL_DIR) -> int:
    """
    Delete networks first saved more than ``days`` days ago.

    Returns:
        int: Number of deleted networks, or -1 on database error

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
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    """Metadata of a saved network without decoding its model."""
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error getting metadata for '{network_id}': {e}")
    except json.JSONDecodeError as e:
        logger.error(f"Corrupt architecture column for '{network_id}': {e}")
    return None
