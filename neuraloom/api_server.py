"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for training hand-built
networks.

This module provides endpoints for:
- Building and validating networks from node and connection lists
- Training networks with real-time progress updates via WebSockets
- Stepping through training one epoch or one sample phase at a time
- Running inference on the current weights

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for background training runs

Nothing is persisted: networks live only as long as the process.
"""

import os
import sys
import uuid
import logging
from typing import Any, Dict, List, Optional, Tuple

import gevent
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from neuraloom.datasets import DatasetPreset
from neuraloom.errors import GraphError
from neuraloom.training import (
    RunState,
    StepGranularity,
    TrainingConfig,
    TrainingService,
    TrainingUpdate,
    build_network
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
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('neuraloom').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
# network_info holds the caller's description, the training data and the
# TrainingService that owns the compiled network.
active_networks: Dict[str, Dict[str, Any]] = {}

# Defaults applied to missing training parameters
DEFAULT_TRAINING = {
    'epochs': 500,
    'learning_rate': 0.1,
    'loss': 'mse',
    'batch_size': 1,
}

# Seconds a reset waits for a cancelled run to finish its epoch
RESET_TIMEOUT = 10


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def error_response(message: str, status: int, error_type: Optional[str] = None):
    body = {'error': message}
    if error_type is not None:
        body['error_type'] = error_type
    return jsonify(body), status


def graph_error_response(e: GraphError):
    """Structural errors are reported verbatim with their type name."""
    return error_response(str(e), 400, type(e).__name__)


def parse_training_config(data: Dict[str, Any]) -> TrainingConfig:
    """
    Build a TrainingConfig from a request body.

    Raises:
        ValueError: If a parameter is missing its expected type or range
    """
    params = {**DEFAULT_TRAINING, **{k: v for k, v in data.items() if v is not None}}
    max_norm = params.get('max_gradient_norm')
    return TrainingConfig(
        learning_rate=params['learning_rate'],
        loss=params['loss'],
        epochs=params['epochs'],
        batch_size=params['batch_size'],
        max_gradient_norm=float(max_norm) if max_norm is not None else float('inf'),
        shuffle=bool(params.get('shuffle', True)),
        seed=params.get('seed')
    )


def parse_training_data(data: Dict[str, Any]) -> Optional[List[Tuple[List[float], List[float]]]]:
    """
    Resolve training samples from a request body.

    Accepts either ``dataset`` (a preset name) or ``data`` (a list of
    ``{'input': [...], 'target': [...]}`` objects). Returns None when
    neither is given so the XOR preset is used.
    """
    if data.get('data') is not None:
        return [
            ([float(v) for v in row['input']], [float(v) for v in row['target']])
            for row in data['data']
        ]
    if data.get('dataset') is not None:
        return DatasetPreset(str(data['dataset']).lower()).training_data()
    return None


def emit_update(network_id: str, update: TrainingUpdate) -> None:
    """Send a progress record to connected clients."""
    socketio.emit('training_update', {'network_id': network_id, **update.to_dict()})
    # Let gevent send the message immediately
    gevent.sleep(0)


def get_network_info(network_id: str) -> Optional[Dict[str, Any]]:
    info = active_networks.get(network_id)
    if info is None:
        logger.warning(f"Request for non-existent network: {network_id}")
    return info


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and the number of networks currently training."""
    active_training = sum(
        1 for info in active_networks.values()
        if info['service'].is_running
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Build and validate a network.

    Request body:
        {
            'nodes': [{'id': 'i1', 'role': 'input', 'activation': 'linear'}, ...],
            'connections': [{'id': 'c1', 'source_id': 'i1', 'target_id': 'h1',
                             'weight': 0.5}, ...],
            'dataset': 'xor'            # or 'data': [{'input': [...], 'target': [...]}]
        }

    Returns:
        JSON with network_id and its size, or a 400 naming the structural error
    """
    data = request.get_json() or {}
    nodes = data.get('nodes')
    connections = data.get('connections', [])

    if not isinstance(nodes, list) or not isinstance(connections, list):
        return error_response('nodes and connections must be lists', 400)

    try:
        samples = parse_training_data(data)
        compiled = build_network(nodes, connections, samples, seed=data.get('seed'))
    except GraphError as e:
        logger.info(f"Rejected network: {e}")
        return graph_error_response(e)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Malformed network description: {e}")
        return error_response(f'Malformed network description: {e}', 400)
    except Exception as e:
        logger.exception(f"Error creating network: {e}")
        return error_response(f'Failed to create network: {str(e)}', 500)

    network_id = str(uuid.uuid4())
    service = TrainingService(seed=data.get('seed'))
    service.load(compiled)

    active_networks[network_id] = {
        'nodes': nodes,
        'connections': connections,
        'data': compiled.training_data,
        'service': service
    }

    logger.info(f"Created network {network_id}")

    return jsonify({
        'network_id': network_id,
        'neurons': compiled.model.num_nodes,
        'weights': compiled.model.num_weights,
        'samples': len(compiled.training_data),
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all networks held in memory."""
    networks = [
        {
            'network_id': network_id,
            'state': info['service'].state.value,
            'step_epoch': info['service'].step_epoch,
            'samples': len(info['data'])
        }
        for network_id, info in active_networks.items()
    ]
    return jsonify({'networks': networks}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network(network_id: str):
    """Cancel any training and forget a network."""
    info = active_networks.pop(network_id, None)
    if info is None:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return error_response('Network not found', 404)

    info['service'].reset()
    logger.info(f"Deleted network {network_id}")
    return jsonify({'network_id': network_id, 'deleted': True}), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start a continuous training run in the background.

    Request body (all optional):
        {
            'epochs': 500,
            'learning_rate': 0.1,
            'loss': 'mse',           # or 'cross_entropy'
            'batch_size': 1,
            'max_gradient_norm': null
        }

    ``epochs`` counts additional epochs: a network trained or stepped before
    keeps its weights and its epoch numbering.

    Progress is sent as 'training_update' WebSocket events, followed by
    'training_complete' or 'training_error'.
    """
    info = get_network_info(network_id)
    if info is None:
        return error_response('Network not found', 404)

    service: TrainingService = info['service']
    if service.is_running:
        return error_response('Training already running', 409)

    try:
        config = parse_training_config(request.get_json() or {})
    except (TypeError, ValueError) as e:
        return error_response(str(e), 400)

    try:
        compiled = service.stepping_network or build_network(
            info['nodes'], info['connections'], info['data']
        )
    except GraphError as e:
        return graph_error_response(e)

    def on_update(update: TrainingUpdate) -> None:
        emit_update(network_id, update)

    def on_complete(state: RunState) -> None:
        if state is RunState.FAILED:
            socketio.emit('training_error', {
                'network_id': network_id,
                'status': state.value,
                'error': str(service.error)
            })
        else:
            socketio.emit('training_complete', {
                'network_id': network_id,
                'status': state.value,
                'epoch': service.step_epoch
            })
        gevent.sleep(0)

    # Epoch numbering continues from earlier runs and manual steps
    service.start_training(
        compiled, config, on_update, on_complete, start_epoch=service.step_epoch
    )

    return jsonify({
        'network_id': network_id,
        'epochs': config.epochs,
        'status': 'training_started'
    }), 202


@app.route('/api/networks/<network_id>/stop', methods=['POST'])
def stop_network(network_id: str):
    """Ask a running training job to stop before its next epoch."""
    info = get_network_info(network_id)
    if info is None:
        return error_response('Network not found', 404)

    stopping = info['service'].stop_training()
    return jsonify({
        'network_id': network_id,
        'stopping': stopping,
        'state': info['service'].state.value
    }), 200


@app.route('/api/networks/<network_id>/step', methods=['POST'])
def step_network(network_id: str):
    """
    Advance training manually.

    Request body:
        {'granularity': 'sample' | 'epoch', plus any training parameter}
    """
    info = get_network_info(network_id)
    if info is None:
        return error_response('Network not found', 404)

    data = request.get_json() or {}
    service: TrainingService = info['service']
    if service.is_running:
        return error_response('Training already running', 409)

    try:
        granularity = StepGranularity(data.get('granularity', 'sample'))
        config = parse_training_config(
            {k: v for k, v in data.items() if k != 'granularity'}
        )
        update = service.step(
            granularity, info['nodes'], info['connections'], config,
            data=info['data']
        )
    except GraphError as e:
        return graph_error_response(e)
    except (TypeError, ValueError) as e:
        return error_response(str(e), 400)
    except Exception as e:
        logger.exception(f"Error stepping network {network_id}: {e}")
        return error_response('Internal server error', 500)

    return jsonify({'network_id': network_id, **update.to_dict()}), 200


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Run inference with the current weights.

    Request body:
        {'input': [0.0, 1.0]}
    """
    info = get_network_info(network_id)
    if info is None:
        return error_response('Network not found', 404)

    service: TrainingService = info['service']
    if service.is_running:
        return error_response('Training already running', 409)

    values = (request.get_json() or {}).get('input')
    if not isinstance(values, list):
        return error_response('input must be a list of numbers', 400)

    try:
        compiled = service.stepping_network
        if compiled is None:
            compiled = build_network(info['nodes'], info['connections'], info['data'])
            service.load(compiled)
        output = compiled.predict([float(v) for v in values])
    except GraphError as e:
        return graph_error_response(e)
    except (TypeError, ValueError) as e:
        return error_response(str(e), 400)

    return jsonify({'network_id': network_id, 'output': output}), 200


@app.route('/api/networks/<network_id>/reset', methods=['POST'])
def reset_network(network_id: str):
    """Cancel training and rebuild the network from its description."""
    info = get_network_info(network_id)
    if info is None:
        return error_response('Network not found', 404)

    service: TrainingService = info['service']
    service.reset()
    # A cancelled run may still be finishing its current epoch
    service.wait(RESET_TIMEOUT)
    try:
        compiled = build_network(info['nodes'], info['connections'], info['data'])
    except GraphError as e:
        return graph_error_response(e)

    if not service.load(compiled):
        logger.warning(f"Reset of network {network_id} timed out waiting for training to stop")
        return error_response('Training is still stopping, try again', 409)

    logger.info(f"Reset network {network_id}")
    return jsonify({'network_id': network_id, 'state': service.state.value}), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    is_cloud = bool(os.environ.get('PORT'))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
