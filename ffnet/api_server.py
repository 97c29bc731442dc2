"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API for creating, training and persisting networks.

This module provides endpoints for:
- Creating networks from a topology
- Running predictions and online training steps
- Persisting networks to/from the SQLite registry
- Exporting networks in the binary model format

Training runs synchronously inside the request; a network is never
trained from more than one request at a time.
"""

import os
import sys
import uuid
import logging
import threading
from typing import Dict, Any, List, Optional, Tuple

import numpy as np
from flask import Flask, Response, request, jsonify
from flask_cors import CORS

from ffnet.errors import NetworkError, TopologyMismatch
from ffnet.network import Network
from ffnet.model_persistence import (
    save_network,
    load_network,
    load_network_data,
    get_network_metadata,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: silence werkzeug request logs, keep our own at INFO
    - In development: use LOG_LEVEL everywhere
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('ffnet').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/api/*": {"origins": "*"}})
app.config['MODEL_DIR'] = os.getenv('MODEL_DIR', 'models')

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Guards active_networks and every network in it across requests
_network_lock = threading.Lock()

DEFAULT_LAYER_SIZES = [2, 3, 1]
DEFAULT_LEARNING_RATE = 0.5
MAX_EPOCHS = 100000


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in array.flatten()]


def _model_dir() -> str:
    return app.config['MODEL_DIR']


def _get_network_info(network_id: str) -> Optional[Dict[str, Any]]:
    """
    Return the in-memory entry for a network, materializing it from the
    registry when it was saved but is not loaded. A materialized entry
    carries the saved training status and loss.
    """
    with _network_lock:
        if network_id in active_networks:
            return active_networks[network_id]

        net = load_network(network_id, _model_dir())
        if net is None:
            return None

        metadata = get_network_metadata(network_id, _model_dir()) or {}
        active_networks[network_id] = {
            'network': net,
            'architecture': net.sizes,
            'trained': metadata.get('trained', False),
            'loss': metadata.get('loss')
        }
        logger.info(f"Materialized saved network {network_id}")
        return active_networks[network_id]


def _parse_samples(
    raw_samples: Any
) -> List[Tuple[List[float], List[float]]]:
    """Validate ``[{'inputs': [...], 'targets': [...]}, ...]``."""
    if not isinstance(raw_samples, list) or not raw_samples:
        raise ValueError('samples must be a non-empty list')

    samples = []
    for sample in raw_samples:
        if not isinstance(sample, dict):
            raise ValueError('each sample must be an object')
        inputs = sample.get('inputs')
        targets = sample.get('targets')
        if not isinstance(inputs, list) or not isinstance(targets, list):
            raise ValueError('each sample needs inputs and targets lists')
        samples.append((inputs, targets))
    return samples


def _not_found(network_id: str, action: str):
    logger.warning(f"{action} requested for non-existent network: {network_id}")
    return jsonify({'error': 'Network not found'}), 404


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and the number of networks in memory."""
    with _network_lock:
        count = len(active_networks)
    return jsonify({'status': 'online', 'active_networks': count}), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network with random weights.

    Request body (optional):
        {'layer_sizes': [2, 3, 1], 'learning_rate': 0.5, 'seed': 42}

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    layer_sizes = data.get('layer_sizes', DEFAULT_LAYER_SIZES)
    learning_rate = data.get('learning_rate', DEFAULT_LEARNING_RATE)
    seed = data.get('seed')

    if not isinstance(layer_sizes, list):
        return jsonify({'error': 'layer_sizes must be a list'}), 400
    if (isinstance(learning_rate, bool)
            or not isinstance(learning_rate, (int, float))
            or learning_rate <= 0):
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if seed is not None and (isinstance(seed, bool)
                             or not isinstance(seed, int) or seed < 0):
        return jsonify({'error': 'seed must be a non-negative integer'}), 400

    try:
        net = Network(layer_sizes, learning_rate,
                      rng=np.random.default_rng(seed))
    except NetworkError as e:
        logger.warning(f"Invalid architecture requested: {layer_sizes}")
        return jsonify({'error': f'Invalid architecture: {e}'}), 400

    network_id = str(uuid.uuid4())
    with _network_lock:
        active_networks[network_id] = {
            'network': net,
            'architecture': net.sizes,
            'trained': False,
            'loss': None
        }

    logger.info(f"Created network {network_id} with architecture {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'learning_rate': net.learning_rate,
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved)."""
    with _network_lock:
        in_memory = [
            {
                'network_id': nid,
                'architecture': info['architecture'],
                'trained': info['trained'],
                'loss': info['loss'],
                'status': 'in_memory'
            }
            for nid, info in active_networks.items()
        ]
    in_memory_ids = {net['network_id'] for net in in_memory}

    saved_only = []
    for net in list_saved_networks(_model_dir()):
        if net['network_id'] not in in_memory_ids:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(
        f"Listing networks: {len(in_memory)} in memory, "
        f"{len(saved_only)} saved"
    )
    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Run a forward pass.

    Request body:
        {'inputs': [1.0, 0.0]}
    """
    info = _get_network_info(network_id)
    if info is None:
        return _not_found(network_id, 'Prediction')

    data = request.get_json(silent=True) or {}
    inputs = data.get('inputs')
    if not isinstance(inputs, list):
        return jsonify({'error': 'inputs must be a list of numbers'}), 400

    try:
        with _network_lock:
            outputs = info['network'].predict(inputs)
    except (NetworkError, TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'network_id': network_id,
        'outputs': array_to_float_list(outputs)
    }), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Train a network on a set of samples, one example at a time.

    Request body:
        {
            'samples': [{'inputs': [0, 1], 'targets': [1]}, ...],
            'epochs': 1000
        }

    Returns:
        JSON with the mean squared error after training
    """
    info = _get_network_info(network_id)
    if info is None:
        return _not_found(network_id, 'Training')

    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', 1)

    if (isinstance(epochs, bool) or not isinstance(epochs, int)
            or not 1 <= epochs <= MAX_EPOCHS):
        return jsonify({
            'error': f'epochs must be an integer between 1 and {MAX_EPOCHS}'
        }), 400

    try:
        samples = _parse_samples(data.get('samples'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    net = info['network']
    logger.info(
        f"Training network {network_id}: {len(samples)} samples, "
        f"epochs={epochs}, lr={net.learning_rate}"
    )

    try:
        with _network_lock:
            # Validates every sample before the first weight update
            net.evaluate(samples)
            for _ in range(epochs):
                for inputs, targets in samples:
                    net.train(inputs, targets)
            loss = net.evaluate(samples)
            info['trained'] = True
            info['loss'] = loss
    except (NetworkError, TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    logger.info(f"Training completed for network {network_id}: loss {loss:.6f}")

    return jsonify({
        'network_id': network_id,
        'epochs': epochs,
        'loss': loss,
        'status': 'trained'
    }), 200


@app.route('/api/networks/<network_id>/save', methods=['POST'])
def save_network_endpoint(network_id: str):
    """Store an in-memory network in the registry."""
    with _network_lock:
        info = active_networks.get(network_id)
        if info is not None:
            saved = save_network(
                info['network'],
                network_id,
                model_dir=_model_dir(),
                trained=info['trained'],
                loss=info['loss']
            )

    if info is None:
        return _not_found(network_id, 'Save')
    if not saved:
        return jsonify({'error': 'Failed to save network'}), 500

    return jsonify({'network_id': network_id, 'status': 'saved'}), 200


@app.route('/api/networks/<network_id>/load', methods=['POST'])
def load_network_endpoint(network_id: str):
    """
    Restore saved weights into a network.

    An in-memory network keeps its identity and only has its weights
    replaced; the saved topology must match.
    """
    data = load_network_data(network_id, _model_dir())
    if data is None:
        return _not_found(network_id, 'Load')

    with _network_lock:
        info = active_networks.get(network_id)

    if info is None:
        info = _get_network_info(network_id)
        if info is None:
            return jsonify({'error': 'Saved network is corrupt'}), 500
        return jsonify({
            'network_id': network_id,
            'architecture': info['architecture'],
            'status': 'loaded'
        }), 200

    metadata = get_network_metadata(network_id, _model_dir()) or {}
    try:
        with _network_lock:
            info['network'].load_bytes(data)
            info['trained'] = metadata.get('trained', False)
            info['loss'] = metadata.get('loss')
    except TopologyMismatch as e:
        logger.warning(f"Topology mismatch loading network {network_id}: {e}")
        return jsonify({'error': str(e)}), 409
    except NetworkError as e:
        logger.error(f"Corrupt model for network {network_id}: {e}")
        return jsonify({'error': 'Saved network is corrupt'}), 500

    return jsonify({
        'network_id': network_id,
        'architecture': info['architecture'],
        'status': 'loaded'
    }), 200


@app.route('/api/networks/<network_id>/export', methods=['GET'])
def export_network(network_id: str):
    """Return the network in the binary model format."""
    info = _get_network_info(network_id)
    if info is None:
        return _not_found(network_id, 'Export')

    with _network_lock:
        data = info['network'].to_bytes()

    return Response(
        data,
        mimetype='application/octet-stream',
        headers={
            'Content-Disposition': f'attachment; filename={network_id}.bin'
        }
    )


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and the registry."""
    with _network_lock:
        deleted_from_memory = (
            active_networks.pop(network_id, None) is not None
        )
    deleted_from_disk = delete_network(network_id, _model_dir())

    if not deleted_from_memory and not deleted_from_disk:
        return _not_found(network_id, 'Delete')

    logger.info(
        f"Deleted network {network_id}: memory={deleted_from_memory}, "
        f"disk={deleted_from_disk}"
    )

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Delete saved networks older than the given number of days.

    Request body (optional):
        {'days': 2}  # defaults to 2
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', 2)

    if (isinstance(days, bool) or not isinstance(days, (int, float))
            or days < 0):
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(days=days, model_dir=_model_dir())
    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    logger.info(
        f"Manual cleanup: deleted {deleted_count} network(s) older than "
        f"{days} day(s)"
    )

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': (
            f'Successfully deleted {deleted_count} network(s) older than '
            f'{days} day(s)'
        )
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    is_production = os.getenv('FLASK_ENV') == 'production'
    logger.info(f"Starting server at http://localhost:{port}/")

    try:
        app.run(host='0.0.0.0', port=port, debug=not is_production,
                use_reloader=False)
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
