from aiohttp import web

from tween.tep.app.config import BreakerRegistryAppKey, HealthGaugeAppKey


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    if await health_gauge.is_healthy():
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)


async def handle_internal_breakers(request: web.Request):
    """Current state and counters of every circuit breaker."""
    breakers = request.app[BreakerRegistryAppKey]
    return web.json_response({"breakers": await breakers.metrics()})
