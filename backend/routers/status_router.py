"""
HTTP status endpoints.

Routes:
  GET /            — human-readable status page
  GET /api/health  — liveness probe with live counts
"""
from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

router = APIRouter(tags=["status"])

_STATUS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Game Show Buzzer Server</title></head>
<body>
  <h1>Game Show Buzzer Server</h1>
  <p>Status: running</p>
  <p>Active games: {games}</p>
  <p>Active connections: {connections}</p>
  <p>Uptime: {uptime:.0f}s</p>
</body>
</html>
"""


@router.get("/", response_class=HTMLResponse)
async def status_page(request: Request):
    ctx = request.app.state.context
    return _STATUS_PAGE.format(
        games=len(ctx.registry),
        connections=ctx.connections.count(),
        uptime=ctx.uptime(),
    )


@router.get("/api/health")
async def health_check(request: Request):
    ctx = request.app.state.context
    return {
        "status": "OK",
        "activeGames": len(ctx.registry),
        "activeConnections": ctx.connections.count(),
        "uptime": ctx.uptime(),
    }
