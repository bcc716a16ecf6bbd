"""
Production entry point: eventlet-patched Socket.IO server.

Run with: python -m baton.run   (or the ``baton-server`` script)
"""
import eventlet

eventlet.monkey_patch()

import os  # noqa: E402
import socket  # noqa: E402

from baton.app import create_app  # noqa: E402
from baton.extensions import socketio  # noqa: E402


def main():
    app = create_app()

    # Get the LAN IP address for display
    hostname = socket.gethostname()
    try:
        local_ip = socket.gethostbyname(hostname)
    except socket.gaierror:
        local_ip = '127.0.0.1'

    port = int(os.environ.get('PORT', 5000))

    print("=" * 60)
    print("  Baton - chain custody attendance server")
    print("=" * 60)
    print(f"  API:              http://{local_ip}:{port}/api")
    print(f"  Health check:     http://{local_ip}:{port}/api/health")
    print(f"  Chain token TTL:  {app.config['CHAIN_TOKEN_TTL_SECONDS']}s")
    print("=" * 60)

    socketio.run(app, host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
