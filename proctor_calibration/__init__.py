"""
Proctor Calibration Engine

Calibration core for the proctored-quiz gaze monitor, plus a WebSocket
front end that runs one isolated calibration session per connection.
"""

__version__ = '1.0.0'
