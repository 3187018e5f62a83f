"""
WebSocket server module for the calibration engine.

This module exposes one isolated CalibrationManager per client connection.
"""

from .websocket_server import CalibrationServer, ClientSession, run_server

__all__ = ["CalibrationServer", "ClientSession", "run_server"]
