"""Report endpoints: campaign & flow summary, progress stream, read-only views."""
import asyncio
import json
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import ORJSONResponse
from sse_starlette.sse import EventSourceResponse

from core.exceptions import KlaviyoError, ReportError
from core.observability import get_correlation_id, metrics
from web.schemas import (
    CampaignValuesResponse,
    FlowValuesResponse,
    OwnerAttributionResponse,
    ConversionsResponse,
    MetricsListResponse,
    ReportErrorResponse,
    SummaryResponse,
)
from web.services import report_service
from ._deps import (
    limiter, get_logger, REPORT_RATE_LIMIT, DEFAULT_RATE_LIMIT,
    validate_entity, validate_resource_id, ValidationError,
)

router = APIRouter(prefix="/report", tags=["report"])
logger = get_logger(__name__)

ERROR_RESPONSES = {502: {"model": ReportErrorResponse}}


def _error_body(error: ReportError) -> Dict[str, Any]:
    return {
        "success": False,
        "error": error.payload,
        "stage": error.stage,
        "correlation_id": get_correlation_id(),
    }


def _error_response(error: ReportError) -> ORJSONResponse:
    logger.error(
        f"Report failed at stage '{error.stage}': {error.cause}",
        extra={"stage": error.stage},
    )
    metrics.record_error(f"REPORT_{error.stage.upper()}")
    return ORJSONResponse(status_code=error.status_code, content=_error_body(error))


@router.get("/summary", response_model=SummaryResponse, responses=ERROR_RESPONSES)
@limiter.limit(REPORT_RATE_LIMIT)
async def get_report_summary(request: Request):
    """
    Campaign and flow performance for the last 30 days.

    Expect minutes, not seconds: reporting endpoints are spaced ~31s
    apart. Use /report/summary/stream to follow progress.
    """
    try:
        return await report_service.build_summary()
    except ReportError as e:
        return _error_response(e)


@router.get("/summary/stream")
@limiter.limit(REPORT_RATE_LIMIT)
async def stream_report_summary(request: Request):
    """
    Build the summary while streaming progress as Server-Sent Events.

    Events:
    - stage: Pipeline step started (includes estimatedWaitSeconds for throttled calls)
    - report: Finished report (same body as /report/summary)
    - error: Report-level error envelope
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def on_progress(stage: str, detail: Dict[str, Any]) -> None:
        await queue.put({"event": "stage", "data": json.dumps({"stage": stage, **detail})})

    async def run() -> None:
        try:
            report = await report_service.build_summary(progress=on_progress)
            await queue.put({"event": "report", "data": json.dumps(report)})
        except ReportError as e:
            logger.error(f"Streamed report failed at stage '{e.stage}': {e.cause}")
            await queue.put({"event": "error", "data": json.dumps(_error_body(e))})
        except Exception as e:
            logger.error(f"Streamed report crashed: {e}", exc_info=True)
            await queue.put({
                "event": "error",
                "data": json.dumps({"success": False, "error": str(e), "stage": "internal"}),
            })
        finally:
            await queue.put(None)

    async def event_generator():
        task = asyncio.create_task(run())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        finally:
            # Client went away; stop issuing upstream calls
            if not task.done():
                task.cancel()

    return EventSourceResponse(event_generator())


@router.get("/metrics", response_model=MetricsListResponse, responses=ERROR_RESPONSES)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def get_report_metrics(request: Request):
    """Metric definitions of the account."""
    try:
        items = await report_service.list_metrics()
    except KlaviyoError as e:
        return _error_response(ReportError("metrics", e))
    return {"metrics": items, "count": len(items)}


@router.get("/conversions", response_model=ConversionsResponse, responses=ERROR_RESPONSES)
@limiter.limit(REPORT_RATE_LIMIT)
async def get_report_conversions(
    request: Request,
    entity: str = Query("campaign", description="Owner type: campaign or flow"),
):
    """Conversion events of the window with their resolved owner."""
    try:
        entity = validate_entity(entity)
    except ValidationError as ex:
        raise HTTPException(status_code=400, detail=str(ex))

    try:
        return await report_service.list_conversions(entity)
    except ReportError as e:
        return _error_response(e)


@router.get(
    "/campaigns/{campaign_id}/values",
    response_model=CampaignValuesResponse,
    responses=ERROR_RESPONSES,
)
@limiter.limit(REPORT_RATE_LIMIT)
async def get_campaign_values(request: Request, campaign_id: str):
    """Upstream campaign values report (opens, clicks, recipients ...) for one campaign."""
    try:
        campaign_id = validate_resource_id(campaign_id, field="campaign_id")
    except ValidationError as ex:
        raise HTTPException(status_code=400, detail=str(ex))

    try:
        return await report_service.campaign_values(campaign_id)
    except ReportError as e:
        return _error_response(e)
    except KlaviyoError as e:
        return _error_response(ReportError("campaign-values", e))


@router.get(
    "/flows/{flow_id}/values",
    response_model=FlowValuesResponse,
    responses=ERROR_RESPONSES,
)
@limiter.limit(REPORT_RATE_LIMIT)
async def get_flow_values(request: Request, flow_id: str):
    """Upstream flow values report for one flow, with totals over its messages."""
    try:
        flow_id = validate_resource_id(flow_id, field="flow_id")
    except ValidationError as ex:
        raise HTTPException(status_code=400, detail=str(ex))

    try:
        return await report_service.flow_values(flow_id)
    except ReportError as e:
        return _error_response(e)
    except KlaviyoError as e:
        return _error_response(ReportError("flow-values", e))


async def _owner_attribution(entity: str, owner_id: str):
    try:
        owner_id = validate_resource_id(owner_id, field=f"{entity}_id")
    except ValidationError as ex:
        raise HTTPException(status_code=400, detail=str(ex))

    try:
        return await report_service.owner_attribution(entity, owner_id)
    except ReportError as e:
        return _error_response(e)


@router.get(
    "/campaigns/{campaign_id}/attribution",
    response_model=OwnerAttributionResponse,
    responses=ERROR_RESPONSES,
)
@limiter.limit(REPORT_RATE_LIMIT)
async def get_campaign_attribution(request: Request, campaign_id: str):
    """Conversions attributed to one campaign from the raw event stream."""
    return await _owner_attribution("campaign", campaign_id)


@router.get(
    "/flows/{flow_id}/attribution",
    response_model=OwnerAttributionResponse,
    responses=ERROR_RESPONSES,
)
@limiter.limit(REPORT_RATE_LIMIT)
async def get_flow_attribution(request: Request, flow_id: str):
    """Conversions attributed to one flow from the raw event stream."""
    return await _owner_attribution("flow", flow_id)
