"""
WebSocket server for the calibration engine.

Every client connection gets its own CalibrationManager (and so its own
calibrators and sample buffers). Messages from one connection are
processed one at a time under that connection's lock; the numeric work runs
in a worker thread so other connections keep being served.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import websockets

from proctor_calibration.calibration import (
    CalibrationManager,
    CalibrationSettings,
    LandmarkTracker,
    MalformedInputError,
    parse_step_payload,
)
from proctor_calibration.utils.config_loader import load_config
from proctor_calibration.utils.json_encoder import dumps
from proctor_calibration.utils.logger import get_logger, setup_logger_from_config


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765


@dataclass
class ClientSession:
    """Calibration state owned by exactly one connection."""
    client_id: str
    manager: CalibrationManager
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    messages_handled: int = 0
    log: Any = None


class CalibrationServer:
    """
    WebSocket server that runs isolated calibration sessions.

    Message protocol (JSON objects with a ``type`` field):
    - start: begin a new session
    - step: {"step": <step id>, "data": [...samples]}
    - finalize: gate on quality and build the profile
    - validate_environment: {"sample": {...}} against the session baseline
    - get_session / get_quality / reset / ping
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        config_path: Optional[str] = None,
        tracker_factory: Optional[Callable[[], Optional[LandmarkTracker]]] = None
    ):
        """
        Initialize the WebSocket server.

        Args:
            host: Host address to bind to (default localhost only for security)
            port: Port to listen on
            config_path: Path to YAML config; built-in defaults when None
            tracker_factory: Creates the face tracker handle for each new
                connection's manager
        """
        self.host = host
        self.port = port
        self.config: Dict[str, Any] = load_config(config_path) if config_path else {}
        self.settings = CalibrationSettings.from_config(self.config)
        self.tracker_factory = tracker_factory

        self.logger = setup_logger_from_config(self.config)

        self.sessions: Dict[Any, ClientSession] = {}
        self.server = None
        self.running = False

        # Graceful shutdown coordination (set inside start())
        self._shutdown_event: Optional[asyncio.Event] = None

        self._handlers = {
            'start': self._handle_start,
            'step': self._handle_step,
            'finalize': self._handle_finalize,
            'validate_environment': self._handle_validate_environment,
            'get_session': self._handle_get_session,
            'get_quality': self._handle_get_quality,
            'reset': self._handle_reset,
        }

    def _create_session(self, websocket) -> ClientSession:
        address = getattr(websocket, 'remote_address', None) or ('unknown', 0)
        client_id = f"{address[0]}:{address[1]}"
        tracker = self.tracker_factory() if self.tracker_factory else None
        session = ClientSession(
            client_id=client_id,
            manager=CalibrationManager(settings=self.settings, tracker=tracker),
            log=get_logger(session=client_id),
        )
        self.sessions[websocket] = session
        return session

    async def _handle_client(self, websocket):
        """
        Handle a connected client.

        Args:
            websocket: The client's WebSocket connection
        """
        session = self._create_session(websocket)
        self.logger.info(f"Client connected: {session.client_id}")

        try:
            await websocket.send(dumps({
                'type': 'status',
                'connected': True,
                'clients_connected': len(self.sessions),
                'quality_threshold': self.settings.quality_threshold,
            }))

            async for message in websocket:
                await self._handle_client_message(websocket, message)

        except websockets.exceptions.ConnectionClosed:
            session.log.info("Client disconnected")
        except Exception as e:
            session.log.error(f"Error handling client: {e}")
        finally:
            async with session.lock:
                session.manager.reset_calibration()
            self.sessions.pop(websocket, None)
            self.logger.info(f"Client removed: {session.client_id} (Total clients: {len(self.sessions)})")

    async def _handle_client_message(self, websocket, message: str):
        """
        Handle incoming message from a client.

        Args:
            websocket: The client's WebSocket connection
            message: The message received
        """
        session = self.sessions.get(websocket)
        if session is None:
            session = self._create_session(websocket)

        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            session.log.warning(f"Invalid JSON received: {message[:100]}")
            await websocket.send(self._error('invalid_json', 'Message is not valid JSON'))
            return

        if not isinstance(data, dict):
            await websocket.send(self._error('malformed_input', 'Message must be a JSON object'))
            return

        msg_type = data.get('type')
        if msg_type == 'ping':
            await websocket.send(dumps({'type': 'pong', 'timestamp': time.time()}))
            return

        handler = self._handlers.get(msg_type)
        if handler is None:
            session.log.warning(f"Unknown message type: {msg_type}")
            await websocket.send(self._error('unknown_message', f"Unknown message type: {msg_type}"))
            return

        try:
            async with session.lock:
                response = await asyncio.to_thread(handler, session.manager, data)
                session.messages_handled += 1
        except MalformedInputError as e:
            session.log.warning(f"Malformed {msg_type} message: {e}")
            await websocket.send(self._error('malformed_input', str(e)))
            return
        except Exception as e:
            session.log.error(f"Error handling {msg_type} message: {e}")
            await websocket.send(self._error('internal_error', f"Failed to handle {msg_type}: {e}"))
            return

        response['type'] = f"{msg_type}_response"
        await websocket.send(dumps(response))

    @staticmethod
    def _error(code: str, message: str) -> str:
        return dumps({'type': 'error', 'error': code, 'message': message})

    # Handlers run in a worker thread while the session lock is held

    @staticmethod
    def _handle_start(manager: CalibrationManager, data: dict) -> dict:
        session = manager.start_calibration()
        return {'success': True, 'session': session.to_dict()}

    @staticmethod
    def _handle_step(manager: CalibrationManager, data: dict) -> dict:
        step_id = data.get('step')
        payload = parse_step_payload(step_id, data.get('data', []))
        success = manager.process_step(payload)
        session = manager.get_current_session()
        return {
            'step': step_id,
            'success': success,
            'session': session.to_dict() if session else None,
        }

    @staticmethod
    def _handle_finalize(manager: CalibrationManager, data: dict) -> dict:
        return manager.finalize_calibration().to_dict()

    @staticmethod
    def _handle_validate_environment(manager: CalibrationManager, data: dict) -> dict:
        if 'sample' not in data:
            raise MalformedInputError("Missing field 'sample'")
        return manager.validate_environment(data['sample']).to_dict()

    @staticmethod
    def _handle_get_session(manager: CalibrationManager, data: dict) -> dict:
        session = manager.get_current_session()
        return {
            'status': manager.status.value,
            'session': session.to_dict() if session else None,
        }

    @staticmethod
    def _handle_get_quality(manager: CalibrationManager, data: dict) -> dict:
        return {
            'quality': manager.get_calibration_quality().to_dict(),
            'meets_threshold': manager.meets_quality_threshold(),
        }

    @staticmethod
    def _handle_reset(manager: CalibrationManager, data: dict) -> dict:
        manager.reset_calibration()
        return {'success': True, 'status': manager.status.value}

    async def start(self):
        """Start the WebSocket server."""
        self.logger.info(f"Starting calibration WebSocket server on ws://{self.host}:{self.port}")

        self._shutdown_event = asyncio.Event()
        self.running = True

        self.server = await websockets.serve(
            self._handle_client,
            self.host,
            self.port
        )

        self.logger.info(f"WebSocket server listening on ws://{self.host}:{self.port}")
        self.logger.info("Press Ctrl+C to stop")

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def stop(self):
        """Stop the WebSocket server and drop every session."""
        self.logger.info("Stopping server...")

        # Unblock start() if stop() is called directly
        if self._shutdown_event is not None:
            self._shutdown_event.set()

        self.running = False

        if self.sessions:
            close_tasks = [client.close() for client in list(self.sessions)]
            await asyncio.gather(*close_tasks, return_exceptions=True)

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        self.logger.info("Server stopped")


def run_server(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    config_path: Optional[str] = None
):
    """
    Run the WebSocket server.

    Args:
        host: Host address to bind to
        port: Port to listen on
        config_path: Path to config file
    """
    server = CalibrationServer(host=host, port=port, config_path=config_path)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        print("\nServer stopped by user")
