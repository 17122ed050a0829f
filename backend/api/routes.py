from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel
from typing import Optional

from models.batch import BatchRequest
from models.monitor import ReevalThresholds, RunRequest, TickRequest
from models.scan import ScanRequest
from services.dataset import rows_to_jsonl
from services.errors import PersistenceError, ValidationError
from services.radar import RadarService
from utils.logger import get_logger

router = APIRouter()
logger = get_logger("routes")


class TimelineResponse(BaseModel):
    topic_key: str
    entries: list[dict]


def get_radar(request: Request) -> RadarService:
    return request.app.state.radar


def _bad_request(exc: ValidationError) -> HTTPException:
    logger.info("Rejected request", error=exc.message, field=exc.field)
    return HTTPException(status_code=400, detail=exc.message)


# ==================== SCANS ====================


@router.post("/scans/run")
async def run_scan(body: ScanRequest, radar: RadarService = Depends(get_radar)):
    try:
        result = await radar.run_scan(body)
    except ValidationError as exc:
        raise _bad_request(exc)
    return result.model_dump(mode="json")


@router.post("/scans/batch_run")
async def run_batch(body: BatchRequest, radar: RadarService = Depends(get_radar)):
    try:
        result = await radar.run_batch(body)
    except ValidationError as exc:
        raise _bad_request(exc)
    return result.model_dump(mode="json")


@router.get("/scans")
async def list_scans(
    topic_key: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    radar: RadarService = Depends(get_radar),
):
    scans = radar.state.scans
    if topic_key:
        scans = [scan for scan in scans if scan.topic_key == topic_key]
    newest_first = list(reversed(scans))[:limit]
    return [scan.model_dump(mode="json", exclude={"stage_logs"}) for scan in newest_first]


@router.get("/scans/{scan_id}/stage_logs")
async def get_stage_logs(scan_id: str, radar: RadarService = Depends(get_radar)):
    scan = radar.state.get_scan(scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")
    return [log.model_dump(mode="json") for log in scan.stage_logs]


@router.get("/opportunities")
async def list_opportunities(
    scan_id: Optional[str] = None,
    radar: RadarService = Depends(get_radar),
):
    if scan_id:
        if radar.state.get_scan(scan_id) is None:
            raise HTTPException(status_code=404, detail=f"Scan {scan_id} not found")
        opps = radar.state.opportunities_for_scan(scan_id)
    else:
        opps = list(radar.state.opportunities.values())
    return [opp.model_dump(mode="json") for opp in opps]


@router.get("/replay")
async def replay_scan(
    scan: Optional[str] = None,
    radar: RadarService = Depends(get_radar),
):
    if not scan:
        raise HTTPException(status_code=400, detail="Missing scan parameter")
    replay = radar.state.replay(scan)
    if replay is None:
        raise HTTPException(status_code=404, detail=f"Scan {scan} not found")
    return replay.model_dump(mode="json")


@router.get("/diff")
async def diff_scans(
    from_scan: Optional[str] = None,
    to_scan: Optional[str] = None,
    radar: RadarService = Depends(get_radar),
):
    if not from_scan or not to_scan:
        raise HTTPException(status_code=400, detail="Missing from_scan or to_scan parameters")
    diff = radar.state.diff(from_scan, to_scan)
    if diff is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    return diff.model_dump(mode="json")


@router.get("/batches/{batch_id}")
async def get_batch(batch_id: str, radar: RadarService = Depends(get_radar)):
    batch = radar.state.batches.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return batch.as_export()


@router.get("/export/llm_dataset")
async def export_llm_dataset(
    batch_id: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    radar: RadarService = Depends(get_radar),
):
    rows = radar.state.dataset_rows_for(batch_id)
    if limit is not None:
        rows = rows[-limit:]
    return Response(content=rows_to_jsonl(rows), media_type="application/x-ndjson")


# ==================== MONITOR & REEVAL ====================


@router.post("/monitor/tick")
async def monitor_tick(body: TickRequest, radar: RadarService = Depends(get_radar)):
    try:
        result = await radar.tick(body.universe, body.simulate_price_move)
    except ValidationError as exc:
        raise _bad_request(exc)
    return result.model_dump(mode="json")


@router.get("/monitor/state")
async def monitor_state(radar: RadarService = Depends(get_radar)):
    return radar.monitor_snapshot()


@router.post("/reeval/plan")
async def reeval_plan(body: ReevalThresholds, radar: RadarService = Depends(get_radar)):
    result = await radar.plan(body)
    return result.model_dump(mode="json")


@router.post("/reeval/run")
async def reeval_run(body: RunRequest, radar: RadarService = Depends(get_radar)):
    result = await radar.execute(body.jobs, provider=body.provider, dry_run=body.dry_run)
    return result.model_dump(mode="json")


@router.get("/timeline/{topic_key}", response_model=TimelineResponse)
async def topic_timeline(
    topic_key: str,
    limit: int = Query(default=50, ge=1, le=500),
    radar: RadarService = Depends(get_radar),
):
    try:
        entries = await radar.repository.get_timeline(topic_key, limit)
    except PersistenceError as exc:
        logger.error("Timeline read failed", topic_key=topic_key, error=str(exc))
        raise HTTPException(status_code=503, detail="Timeline unavailable")
    return TimelineResponse(topic_key=topic_key, entries=entries)
