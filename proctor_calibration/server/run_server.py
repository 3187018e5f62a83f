#!/usr/bin/env python3
"""
CLI entry point for the calibration WebSocket server.

Usage:
    python -m proctor_calibration.server.run_server [--host HOST] [--port PORT] [--config CONFIG]

Examples:
    python -m proctor_calibration.server.run_server
    python -m proctor_calibration.server.run_server --port 9000
    python -m proctor_calibration.server.run_server --config custom_config.yaml
"""

import argparse
import sys
from pathlib import Path

from proctor_calibration.server.websocket_server import DEFAULT_HOST, DEFAULT_PORT, run_server
from proctor_calibration.utils.config_loader import DEFAULT_CONFIG_PATH, get_section, load_config


def main():
    parser = argparse.ArgumentParser(
        description="Proctor Calibration WebSocket Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    Start server with the settings from config/config.yaml:
        python -m proctor_calibration.server.run_server

    Start server on custom port:
        python -m proctor_calibration.server.run_server --port 9000

    Use custom config file:
        python -m proctor_calibration.server.run_server --config my_config.yaml

Each connection runs its own calibration session. The quiz UI streams the
gaze, head-pose and environment batches and receives the finished
calibration profile on finalize.
        """
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help=f"Host address to bind to (default: config value or {DEFAULT_HOST})"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"Port to listen on (default: config value or {DEFAULT_PORT})"
    )

    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})"
    )

    args = parser.parse_args()

    config_path = args.config if Path(args.config).exists() else None
    if config_path is None:
        print(f"Config file not found: {args.config} (using built-in defaults)")

    server_cfg = get_section(load_config(config_path), 'server') if config_path else {}
    host = args.host or server_cfg.get('host', DEFAULT_HOST)
    port = args.port or int(server_cfg.get('port', DEFAULT_PORT))

    print(f"""
╔═══════════════════════════════════════════════════════════════╗
║           Proctor Calibration WebSocket Server                 ║
╠═══════════════════════════════════════════════════════════════╣
║  Host:   {host:<52} ║
║  Port:   {port:<52} ║
║  Config: {str(config_path):<52} ║
╚═══════════════════════════════════════════════════════════════╝
    """)

    try:
        run_server(host=host, port=port, config_path=config_path)
    except KeyboardInterrupt:
        print("\n\nServer stopped.")
        sys.exit(0)
    except Exception as e:
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
