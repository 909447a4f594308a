# core/cors.py
import logging
from typing import Dict, Tuple

from aiohttp import web

logger = logging.getLogger(__name__)

ALLOWED_METHODS = 'GET, POST, OPTIONS'
ALLOWED_HEADERS = (
    'SOAPAction,X-CustomHeader,Keep-Alive,User-Agent,'
    'X-Requested-With,If-Modified-Since,Cache-Control,Content-Type'
)
# 20 days
PREFLIGHT_MAX_AGE = '1728000'


def negotiate(request_headers, method: str, allowed_origin: str) -> Tuple[Dict[str, str], bool]:
    """
    Decides which CORS headers a response gets.

    Returns (headers, is_preflight). Without an Origin header nothing is
    added. The configured origin is sent back as is, the browser compares
    it with the origin of the calling page.
    """
    if not request_headers.get('Origin'):
        return {}, False

    headers = {
        'Access-Control-Allow-Origin': allowed_origin,
        'Access-Control-Allow-Methods': ALLOWED_METHODS,
        'Access-Control-Allow-Credentials': 'true',
        'Access-Control-Allow-Headers': ALLOWED_HEADERS,
    }

    if method != 'OPTIONS':
        return headers, False

    headers.update({
        'Access-Control-Allow-Private-Network': 'true',
        'Access-Control-Max-Age': PREFLIGHT_MAX_AGE,
        'Content-Type': 'text/plain charset=UTF-8',
    })
    return headers, True


def preflight_response(headers: Dict[str, str]) -> web.Response:
    """No-content reply to a preflight, the backend is never called"""
    return web.Response(status=204, headers=headers)
