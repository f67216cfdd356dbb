from __future__ import annotations

from fastapi import Response, status

CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS, PUT, DELETE",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def preflight_response() -> Response:
    """Answer any preflight the same way, whatever path it was sent to."""
    return Response(status_code=status.HTTP_200_OK, headers=dict(CORS_PREFLIGHT_HEADERS))
