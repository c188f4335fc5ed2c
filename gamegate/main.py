import asyncio
import contextlib
import logging

from fastapi import FastAPI

from gamegate.api.routes import router
from gamegate.sandbox.host import get_host

app = FastAPI(title="gamegate", version="0.1.0")
app.include_router(router)
# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

_reaper: asyncio.Task | None = None


async def _reap_forever() -> None:
    while True:
        host = get_host()
        await asyncio.sleep(max(1.0, min(60.0, host.settings.instance_idle_s)))
        try:
            reaped = await host.reap_idle()
        except Exception:
            logger.exception("idle instance reaper failed")
            continue
        if reaped:
            logger.info("reaped %d idle instance(s)", reaped)


@app.on_event("startup")
async def _startup() -> None:
    global _reaper
    _reaper = asyncio.create_task(_reap_forever())


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _reaper
    if _reaper is not None:
        _reaper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _reaper
        _reaper = None
    host = get_host()
    if host.active_count:
        logger.info("destroying %d live instance(s)", host.active_count)
    await host.shutdown()


@app.get("/info")
async def info() -> dict[str, str]:
    return {"name": "gamegate", "version": "0.1.0"}
