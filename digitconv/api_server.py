"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server for the convolutional digit classifier.

This module provides endpoints for:
- Creating networks from random or supplied weights
- Classifying 28x28 digit images with a network
- Persisting networks to/from SQLite database

The server uses:
- Flask for REST API endpoints
- Flask-CORS so browser frontends on other origins can call it
- Matplotlib (Agg backend) to render the classified image
- SQLite for network persistence
"""

import os
import math
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitconv.network import ConvNetwork, ConfigurationError, as_input_image
from digitconv.report import format_probabilities, top_prediction
from digitconv.model_persistence import (
    save_network,
    load_network,
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

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
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
        logging.getLogger('digitconv').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
app.config['MODEL_DIR'] = os.getenv('MODEL_DIR', 'models')
CORS(app, resources={r"/api/*": {"origins": "*"}})

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}


def model_dir() -> str:
    return app.config['MODEL_DIR']


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the database into memory.

    Called at startup to restore networks that were saved before the
    server was restarted.
    """
    saved_networks = list_saved_networks(model_dir())

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, model_dir())
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue

        active_networks[network_id] = {
            'network': net,
            'accuracy': net_info['accuracy'],
            'saved': True
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def json_float(value: float) -> Optional[float]:
    """Plain float for JSON, with inf and NaN sent as null."""
    value = float(value)
    return value if math.isfinite(value) else None


def array_to_float_list(array: np.ndarray) -> List[Optional[float]]:
    """Convert a numpy array to a JSON-safe list of floats."""
    return [json_float(val) for val in array.flatten()]


def create_digit_image(image: np.ndarray, predicted: str) -> str:
    """
    Create a base64-encoded PNG image of a classified digit.

    Args:
        image: Input image of shape (1, 28, 28)
        predicted: Label the network predicted

    Returns:
        Base64-encoded PNG image string
    """
    fig = plt.figure(figsize=(3, 3))
    plt.imshow(image.reshape(28, 28), cmap='gray')
    plt.title(f"Predicted: {predicted}")
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    fig.savefig(buffer, format='png', bbox_inches='tight')
    plt.close(fig)

    return base64.b64encode(buffer.getvalue()).decode('utf-8')


def network_summary(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'network_id': network_id,
        'architecture': info['network'].architecture,
        'accuracy': info['accuracy'],
        'status': 'in_memory'
    }


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and the number of networks in memory."""
    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks)
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network.

    Request body (optional):
        {'seed': 42}  # random weights, seeded
    or
        {'filters': [...], 'filter_bias': [...],
         'dense_weights': [...], 'dense_bias': [...]}

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    weight_keys = ('filters', 'filter_bias', 'dense_weights', 'dense_bias')

    try:
        if any(key in data for key in weight_keys):
            missing = [key for key in weight_keys if key not in data]
            if missing:
                return jsonify({
                    'error': f"Missing weights: {', '.join(missing)}"
                }), 400
            net = ConvNetwork(*(data[key] for key in weight_keys))
        else:
            seed = data.get('seed')
            if seed is not None and (not isinstance(seed, int) or seed < 0):
                return jsonify({'error': 'seed must be a non-negative integer'}), 400
            net = ConvNetwork.initialize(seed=seed)
    except ConfigurationError as e:
        logger.warning(f"Rejected network configuration: {e}")
        return jsonify({'error': str(e)}), 400

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'accuracy': None,
        'saved': False
    }

    logger.info(f"Created network {network_id}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Classify one 28x28 image.

    Request body:
        {'image': [784 values or 28 rows of 28], 'include_image': false}

    Returns:
        JSON with probabilities, logits, the top prediction and the
        plain-text report lines. Softmax overflow is not hidden: inf/NaN
        values are sent as null, ``finite`` is false, and the report
        lines keep the raw ``inf``/``nan`` text.
    """
    if network_id not in active_networks:
        logger.warning(f"Prediction requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    if 'image' not in data:
        return jsonify({'error': 'image is required'}), 400

    net = active_networks[network_id]['network']
    try:
        image = as_input_image(data['image'], dtype=net.dtype)
    except (TypeError, ValueError) as e:
        return jsonify({'error': f'Invalid image: {e}'}), 400

    probabilities = net.feedforward(image)
    prediction = top_prediction(probabilities)

    response = {
        'network_id': network_id,
        'prediction': {**prediction, 'confidence': json_float(prediction['confidence'])},
        'finite': bool(np.all(np.isfinite(probabilities))),
        'probabilities': array_to_float_list(probabilities),
        'logits': array_to_float_list(net.logits),
        'report': format_probabilities(probabilities)
    }
    if data.get('include_image'):
        response['image_data'] = create_digit_image(image, prediction['label'])

    logger.debug(f"Network {network_id} predicted {prediction['label']}")
    return jsonify(response), 200


@app.route('/api/networks/<network_id>/save', methods=['POST'])
def save_network_endpoint(network_id: str):
    """
    Persist an in-memory network.

    Request body (optional):
        {'accuracy': 0.97}
    """
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    accuracy = data.get('accuracy')
    if accuracy is not None and not isinstance(accuracy, (int, float)):
        return jsonify({'error': 'accuracy must be a number'}), 400

    info = active_networks[network_id]
    if not save_network(info['network'], network_id, model_dir(), accuracy=accuracy):
        return jsonify({'error': 'Failed to save network'}), 400

    info['accuracy'] = accuracy
    info['saved'] = True
    return jsonify({'network_id': network_id, 'status': 'saved'}), 200


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        network_summary(nid, info) for nid, info in active_networks.items()
    ]

    saved_only = []
    for net in list_saved_networks(model_dir()):
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id, model_dir())

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks from both memory and disk."""
    saved_ids = [net['network_id'] for net in list_saved_networks(model_dir())]
    all_network_ids = set(active_networks) | set(saved_ids)

    deleted_from_memory_count = len(active_networks)
    active_networks.clear()

    deleted_from_disk_count = sum(
        1 for network_id in saved_ids if delete_network(network_id, model_dir())
    )

    logger.info(
        f"Deleted all networks: {len(all_network_ids)} total, "
        f"{deleted_from_memory_count} from memory, {deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_network_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count
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

    if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(days=days, model_dir=model_dir())
    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    # Drop saved networks that no longer exist on disk
    saved_ids = {net['network_id'] for net in list_saved_networks(model_dir())}
    for nid in [nid for nid, info in active_networks.items()
                if info['saved'] and nid not in saved_ids]:
        del active_networks[nid]

    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({'deleted_count': deleted_count, 'days': days}), 200


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    """Return JSON for errors raised inside endpoints."""
    if isinstance(e, HTTPException):
        return jsonify({'error': e.description}), e.code
    logger.exception(f"Unhandled error: {e}")
    return jsonify({'error': 'Internal server error'}), 500


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    is_production = os.getenv('FLASK_ENV') == 'production'

    reload_saved_networks()
    logger.info(f"Starting server at http://localhost:{port}/")

    app.run(host='0.0.0.0', port=port, debug=not is_production, use_reloader=False)
