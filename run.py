#!/usr/bin/env python3
"""
Entry point for the Multiplayer Session Host.

Usage:
    python run.py                    # Run the API server (default)
    python run.py server             # Run the API server explicitly
    python run.py sweep              # Stop every active session past its TTL, then exit

Environment Variables:
    FLASK_ENV: development, production, cloudrun or testing (default: development)
    PORT: Port to run on (default: 5000)
    LOG_LEVEL: Root logging level (default: INFO)
"""
import logging
import os
import sys


def configure_logging():
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )


def run_server():
    """Run the multiplayer API server."""
    from multiplayer.app import create_app

    app = create_app()
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    logging.getLogger(__name__).info(f"Starting Multiplayer Session Host on port {port}...")
    app.run(host='0.0.0.0', port=port, debug=debug)


def run_sweep():
    """Stop expired sessions; meant to be invoked by an external scheduler."""
    from multiplayer.app import create_app

    app = create_app()
    with app.app_context():
        cleaned_up = app.orchestrator.sweep_expired_sessions()
    logging.getLogger(__name__).info(f"Sweep finished: {cleaned_up} sessions stopped")


if __name__ == '__main__':
    configure_logging()
    mode = sys.argv[1] if len(sys.argv) > 1 else 'server'

    if mode == 'server':
        run_server()
    elif mode == 'sweep':
        run_sweep()
    else:
        print(f"Unknown mode: {mode}")
        print("Usage: python run.py [server|sweep]")
        sys.exit(1)
