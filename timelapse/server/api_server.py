"""
HTTP API for the timelapse service.

Thin aiohttp adapter over the session engine: JSON endpoints for the
session, storage and cleanup operations, static serving of frames and
videos, and a WebSocket that broadcasts capture notifications.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional

from aiohttp import WSMsgType, web

from ..capture.engine import SessionEngine
from ..utils.config import Config
from ..utils.events import CaptureEvent, EventBus
from ..utils.exceptions import (
    AssemblyError,
    ConfigurationError,
    QuotaExceededError,
    SessionNotFoundError,
)
from ..utils.logger import get_logger


logger = get_logger(__name__)


class ApiServer:
    """
    Async HTTP server exposing the session engine.

    Engine calls block (ffmpeg, SQLite), so handlers run them in the
    default executor.
    """

    def __init__(self, config: Config, engine: SessionEngine, events: Optional[EventBus] = None):
        """
        Initialize API server.

        Args:
            config: Service configuration
            engine: Session engine to expose
            events: Notification bus to broadcast over /ws (default: the engine's)
        """
        self.config = config
        self.engine = engine
        self.events = events or engine.events

        server_config = config.get_server_config()
        self.enabled = server_config.get('enabled', True)
        self.host = server_config.get('host', '0.0.0.0')
        self.port = server_config.get('port', 8080)
        self.cors_enabled = server_config.get('cors_enabled', True)
        self.cors_origins = server_config.get('cors_origins', '*')

        self.snapshots_dir = config.get_snapshots_dir()
        self.videos_dir = config.get_videos_dir()

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sockets: set = set()
        self._unsubscribe = None

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        middlewares = [self._cors_middleware] if self.cors_enabled else []
        middlewares.append(self._error_middleware)
        app = web.Application(middlewares=middlewares)

        app.router.add_get('/health', self._handle_health)
        app.router.add_get('/ws', self._handle_websocket)

        app.router.add_post('/api/test-connection', self._handle_test_connection)
        app.router.add_post('/api/sessions', self._handle_start)
        app.router.add_get('/api/sessions', self._handle_list)
        app.router.add_get('/api/sessions/{session_id}', self._handle_get)
        app.router.add_delete('/api/sessions/{session_id}', self._handle_delete)
        app.router.add_post('/api/sessions/{session_id}/stop', self._handle_stop)
        app.router.add_post('/api/sessions/{session_id}/frames', self._handle_import)
        app.router.add_post('/api/sessions/{session_id}/assemble', self._handle_assemble)

        app.router.add_get('/api/storage', self._handle_storage)
        app.router.add_put('/api/storage/quotas', self._handle_set_quotas)
        app.router.add_put('/api/storage/retention', self._handle_set_retention)
        app.router.add_post('/api/cleanup', self._handle_cleanup)

        self.snapshots_dir.mkdir(parents=True, exist_ok=True)
        self.videos_dir.mkdir(parents=True, exist_ok=True)
        app.router.add_static('/snapshots', self.snapshots_dir)
        app.router.add_static('/videos', self.videos_dir)

        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        return app

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler):
        """Add CORS headers to responses."""
        response = await handler(request)
        if response.prepared:
            return response

        response.headers['Access-Control-Allow-Origin'] = self.cors_origins
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, PUT, DELETE, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type'

        return response

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        """Map service errors to JSON error responses."""
        try:
            return await handler(request)
        except SessionNotFoundError as e:
            return _error(404, str(e))
        except QuotaExceededError as e:
            return _error(507, str(e), reason=e.reason, current=e.current, limit=e.limit)
        except (ConfigurationError, ValueError) as e:
            return _error(400, str(e))
        except AssemblyError as e:
            return _error(422, str(e))

    async def _on_startup(self, app: web.Application) -> None:
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self.events.subscribe(self._on_event)

    async def _on_shutdown(self, app: web.Application) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        for ws in list(self._sockets):
            await ws.close()
        self._sockets.clear()

    def _on_event(self, event: CaptureEvent) -> None:
        """Called from session threads; hands the event to the server loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        payload = json.dumps(event.to_dict())
        loop.call_soon_threadsafe(lambda: asyncio.ensure_future(self._broadcast(payload)))

    async def _broadcast(self, payload: str) -> None:
        for ws in list(self._sockets):
            try:
                await ws.send_str(payload)
            except (ConnectionResetError, RuntimeError) as e:
                logger.debug(f"Dropping WebSocket client: {e}")
                self._sockets.discard(ws)

    async def _call(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # Handlers

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            'status': 'ok',
            'timestamp': datetime.now().isoformat(),
            'running_sessions': len(self.engine.running_sessions()),
        })

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        self._sockets.add(ws)
        logger.debug(f"WebSocket client connected ({len(self._sockets)} total)")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.debug(f"WebSocket closed with exception {ws.exception()}")
        finally:
            self._sockets.discard(ws)

        return ws

    async def _handle_test_connection(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        result = await self._call(self.engine.test_source, body.get('kind'), body.get('config') or {})

        if result.error is not None:
            return _error(400, str(result.error), kind=result.error.kind.value)
        return web.json_response({
            'success': True,
            'message': 'Connection successful',
            'width': result.width,
            'height': result.height,
        })

    async def _handle_start(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        session_id = await self._call(
            self.engine.start_session,
            body.get('kind'),
            body.get('config') or {},
            body.get('schedule') or {},
        )
        return web.json_response({'success': True, 'session_id': session_id}, status=201)

    async def _handle_stop(self, request: web.Request) -> web.Response:
        session_id = request.match_info['session_id']
        if not await self._call(self.engine.stop_session, session_id):
            return _error(404, f"No running capture for session {session_id}")

        detail = await self._call(self.engine.get_session, session_id)
        return web.json_response({'success': True, 'frame_count': len(detail.frames)})

    async def _handle_get(self, request: web.Request) -> web.Response:
        detail = await self._call(self.engine.get_session, request.match_info['session_id'])
        return web.json_response({'success': True, 'session': detail.to_dict()})

    async def _handle_list(self, request: web.Request) -> web.Response:
        limit = int(request.query.get('limit', 50))
        offset = int(request.query.get('offset', 0))
        summaries = await self._call(self.engine.list_sessions, limit, offset)
        return web.json_response({
            'success': True,
            'sessions': [s.to_dict() for s in summaries],
            'limit': limit,
            'offset': offset,
        })

    async def _handle_delete(self, request: web.Request) -> web.Response:
        session_id = request.match_info['session_id']
        if not await self._call(self.engine.delete_session, session_id):
            return _error(404, 'Session not found')
        return web.json_response({'success': True})

    async def _handle_import(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        frames = await self._call(
            self.engine.import_frames, request.match_info['session_id'], body.get('paths') or []
        )
        return web.json_response({'success': True, 'frames': [f.to_dict() for f in frames]})

    async def _handle_assemble(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        video = await self._call(self.engine.assemble, request.match_info['session_id'], body)
        return web.json_response({
            'success': True,
            'video': video.to_dict(),
            'video_url': f"/videos/{video.file_path}",
        })

    async def _handle_storage(self, request: web.Request) -> web.Response:
        stats = await self._call(self.engine.storage_stats)
        quotas = await self._call(self.engine.get_quotas)
        retention_days = await self._call(self.engine.get_retention_days)
        return web.json_response({
            'success': True,
            'stats': stats.to_dict(),
            'quotas': quotas.to_dict(),
            'retention_days': retention_days,
        })

    async def _handle_set_quotas(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        quotas = await self._call(
            self.engine.set_quotas, body.get('max_total_mb'), body.get('max_session_mb')
        )
        return web.json_response({'success': True, 'quotas': quotas.to_dict()})

    async def _handle_set_retention(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        days = await self._call(self.engine.set_retention_days, body.get('retention_days'))
        return web.json_response({'success': True, 'retention_days': days})

    async def _handle_cleanup(self, request: web.Request) -> web.Response:
        report = await self._call(self.engine.run_cleanup)
        return web.json_response({'success': True, 'report': report.to_dict()})

    # Lifecycle

    async def start(self) -> None:
        """Start the HTTP server."""
        if not self.enabled:
            logger.info("API server disabled in configuration")
            return

        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        logger.info(f"API server started at http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            self._app = None
            logger.info("API server stopped")


async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ConfigurationError("Request body is not valid JSON")
    if not isinstance(body, dict):
        raise ConfigurationError("Request body must be a JSON object")
    return body


def _error(status: int, message: str, **extra) -> web.Response:
    return web.json_response({'success': False, 'message': message, **extra}, status=status)


def create_api_server(config: Config, engine: SessionEngine, events: Optional[EventBus] = None) -> ApiServer:
    """
    Factory function to create the API server.

    Args:
        config: Service configuration
        engine: Session engine
        events: Notification bus (default: the engine's)

    Returns:
        ApiServer instance
    """
    return ApiServer(config, engine, events)
