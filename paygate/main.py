from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, status

from paygate.core.auth import require_auth_token
from paygate.core.db import SessionLocal, engine, init_db
from paygate.core.logging import configure_logging
from paygate.core.settings import config_settings
from paygate.models.schemas.config import (
    AttributesUpdateModel,
    ConfigSyncModel,
    PresentationResultResponseModel,
)
from paygate.models.schemas.event import EventData
from paygate.models.schemas.experiment import AssignmentModel
from paygate.models.schemas.presentation import GetPaywallResult
from paygate.services.paywall_service import PaywallService

_paywall_service: Optional[PaywallService] = None


def get_paywall_service() -> PaywallService:
    """One service per process: the single-flight guard and unconfirmed map are process-wide."""
    global _paywall_service
    if _paywall_service is None:
        init_db(engine)
        _paywall_service = PaywallService(SessionLocal)
    return _paywall_service


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(config_settings.LOG_LEVEL, config_settings.LOG_JSON)
    yield


app = FastAPI(
    title="Paygate",
    description="Decides whether an event shows a paywall, a holdout or nothing.",
    version="0.1.0",
    dependencies=[Depends(require_auth_token)],
    lifespan=lifespan,
)


@app.put(
    "/config",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Replace triggers and unconfirmed assignments.",
)
async def put_config(
    config_data: ConfigSyncModel,
    service: PaywallService = Depends(get_paywall_service),
):
    await service.sync_config(config_data.triggers, config_data.assignments)


@app.put(
    "/attributes",
    response_model=Dict[str, Any],
    status_code=status.HTTP_200_OK,
    summary="Merge user attributes used by rule expressions.",
)
async def put_attributes(
    attributes_data: AttributesUpdateModel,
    service: PaywallService = Depends(get_paywall_service),
):
    try:
        return service.merge_user_attributes(attributes_data.attributes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.post(
    "/evaluations",
    response_model=PresentationResultResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Preview what an event would do, without side effects.",
)
async def post_evaluations(
    event_data: EventData,
    service: PaywallService = Depends(get_paywall_service),
):
    result, experiment_id = await service.get_presentation_result(event_data)
    return PresentationResultResponseModel(
        event_name=event_data.name, result=result, experiment_id=experiment_id
    )


@app.post(
    "/paywalls",
    response_model=GetPaywallResult,
    status_code=status.HTTP_200_OK,
    summary="Resolve the paywall for an event without presenting it.",
)
async def post_paywalls(
    event_data: EventData,
    service: PaywallService = Depends(get_paywall_service),
):
    return await service.get_paywall(event_data)


@app.get(
    "/assignments",
    response_model=List[AssignmentModel],
    status_code=status.HTTP_200_OK,
    summary="List confirmed assignments.",
)
async def get_assignments(service: PaywallService = Depends(get_paywall_service)):
    return await service.get_confirmed_assignments()


@app.post(
    "/reset",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Clear assignments and triggers (logout).",
)
async def post_reset(service: PaywallService = Depends(get_paywall_service)):
    await service.reset()


if __name__ == "__main__":
    uvicorn.run("paygate.main:app", host="0.0.0.0", port=8000, reload=True)
