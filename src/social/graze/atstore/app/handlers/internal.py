from aiohttp import web

from social.graze.atstore.app.config import HealthGaugeAppKey, MirrorTaskSetAppKey


async def handle_internal_ready(request: web.Request):
    health = await request.app[HealthGaugeAppKey].snapshot()
    if health.healthy:
        return web.json_response(
            {"ready": True, "pending_mirrors": request.app[MirrorTaskSetAppKey].pending}
        )
    return web.json_response(
        {"ready": False, "score": health.score, "failures": health.sources},
        status=503,
    )


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
