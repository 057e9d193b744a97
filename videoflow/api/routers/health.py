from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check() -> dict:
    return {"status": "healthy", "service": "videoflow"}


@router.get("/health/ready")
async def readiness_check(request: Request):
    state = request.app.state
    try:
        database = await state.store.ping()
    except SQLAlchemyError:
        database = False
    object_store = await state.storage.ping()

    body = {
        "status": "ready" if database and object_store else "not_ready",
        "database": "connected" if database else "disconnected",
        "object_store": "connected" if object_store else "disconnected",
        "cache": "enabled" if state.cache.enabled else "disabled",
        "transcoder": "available" if state.transcoder.is_available else "unavailable",
    }
    return JSONResponse(status_code=200 if body["status"] == "ready" else 503, content=body)
