"""
Signaling relay server.

Hosts the Socket.IO relay on an aiohttp application, plus a JSON `/status`
route. Run with `python -m standardcam`.
"""
import argparse
import json
from typing import List, Optional

import socketio
from aiohttp import web

from standardcam.core.config import RelayConfig
from standardcam.core.logging import debug_log, setup_logging
from standardcam.signaling.relay import SignalingRelay


def create_app(config: Optional[RelayConfig] = None) -> web.Application:
    """Build the aiohttp application with the relay attached."""
    config = config or RelayConfig()

    # Handlers run inline so each client's messages are relayed in order
    sio = socketio.AsyncServer(
        async_mode='aiohttp',
        cors_allowed_origins=config.cors_origins,
        async_handlers=False
    )
    relay = SignalingRelay()
    relay.attach(sio)

    app = web.Application()
    sio.attach(app, socketio_path=config.socketio_path)
    app['config'] = config
    app['sio'] = sio
    app['relay'] = relay

    app.router.add_get("/status", handle_status)
    return app


async def handle_status(request):
    """Handle status request."""
    try:
        relay = request.app['relay']
        return web.Response(
            content_type="application/json",
            text=json.dumps(relay.status())
        )
    except Exception as e:
        debug_log(f"❌ [HTTP] Status handling error", {
            "error": str(e),
            "error_type": type(e).__name__
        }, level="ERROR")
        return web.Response(
            content_type="application/json",
            text=json.dumps({'error': str(e)}),
            status=500
        )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='StandardCam signaling relay')
    parser.add_argument('--host', type=str, default=None,
                        help='Interface to bind (default 0.0.0.0)')
    parser.add_argument('--port', type=int, default=None,
                        help='Port to listen on (default 3001)')
    parser.add_argument('--log-level', type=str, default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """Main server function."""
    args = parse_args(argv)
    config = RelayConfig()
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level

    setup_logging(level=config.log_level, log_file=config.log_file)
    debug_log(f"🚀 [Main] Starting StandardCam relay", {"config": str(config)})

    app = create_app(config)
    print(f"Signaling relay started at http://{config.host}:{config.port}")
    web.run_app(app, host=config.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
