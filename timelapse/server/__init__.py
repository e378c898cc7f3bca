"""
Server module for the timelapse service.

Provides the HTTP API and the notification WebSocket.
"""

from .api_server import ApiServer, create_api_server

__all__ = [
    'ApiServer',
    'create_api_server',
]
