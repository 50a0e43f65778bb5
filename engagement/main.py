from fastapi import FastAPI
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from engagement.api.routes import router
from engagement.api.admin_routes import router as admin_router
from engagement.core.errors import ConflictError
from engagement.observability.logging import log
from engagement.settings import settings

app = FastAPI(title="Engagement Lifecycle API")

app.include_router(router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"status": "error", "detail": str(exc)})


@app.exception_handler(RedisError)
async def store_unavailable_handler(request, exc: RedisError):
    log(event="api_store_unavailable", level="error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"status": "error", "detail": "state store unavailable"})


log(event="api_boot", deliveryMode=settings.DELIVERY_MODE, redisUrlSet=bool(settings.REDIS_URL))
