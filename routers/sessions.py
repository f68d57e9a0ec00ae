import uuid
import structlog
from fastapi import APIRouter, Depends, Request, HTTPException
from fastapi_limiter.depends import RateLimiter

from services.store import StoreGateway, StoreError

router = APIRouter(prefix="/numbers")
logger = structlog.get_logger("sessions_api")


# Dependency Injection
def get_store(request: Request) -> StoreGateway:
    return request.app.state.store


def valid_number_id(number_id: str) -> str:
    try:
        uuid.UUID(number_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid number id")
    return number_id


@router.get("/{number_id}/session")
async def get_session(
    number_id: str = Depends(valid_number_id),
    store: StoreGateway = Depends(get_store)
):
    try:
        record = await store.get_session(number_id)
    except StoreError as e:
        logger.error("Failed to load session", number_id=number_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to load session")

    return {"session": record.model_dump(mode="json") if record else None}


@router.post(
    "/{number_id}/session/restart",
    status_code=202,
    dependencies=[Depends(RateLimiter(times=10, minutes=1))]
)
async def restart_session(
    number_id: str = Depends(valid_number_id),
    store: StoreGateway = Depends(get_store)
):
    """
    Ask the runtime to drop the number's client and start over with a fresh QR.

    The runtime picks the request up on its next reconciliation tick.
    """
    try:
        await store.request_restart(number_id)
    except StoreError as e:
        logger.error("Failed to request restart", number_id=number_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to request restart")

    logger.info("Restart requested", number_id=number_id)
    return {"ok": True}
