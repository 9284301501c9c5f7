"""
Replenishment API

Recompute trigger, ranked listing, CSV export, discontinuation flags,
per-variant history and run history.
"""
from fastapi import APIRouter, Depends, Query, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from datetime import date
from typing import Optional, List
import io

from restock.api.deps import get_session_factory, get_ranked_cache, error_response, raise_http
from restock.models.base import get_db
from restock.services.errors import RestockError
from restock.services.recalculation_service import RecalculationService
from restock.services.replenishment_query_service import ReplenishmentQueryService
from restock.utils.logger import log

router = APIRouter(prefix="/replenishment", tags=["replenishment"])


class RecomputeRequest(BaseModel):
    tenant_id: str
    window_days: Optional[int] = Field(None, description="Sales window in days (30 or 60 by default)")
    projection_horizon_days: Optional[int] = Field(None, description="Days of demand to cover")
    calculation_date: Optional[date] = Field(None, description="Snapshot date, defaults to today")


class DiscontinuationRequest(BaseModel):
    variant_ids: List[str] = Field(..., min_length=1)
    reason: Optional[str] = None


@router.post("/recompute")
def recompute(
    body: RecomputeRequest,
    session_factory=Depends(get_session_factory),
    cache=Depends(get_ranked_cache),
):
    """Recompute the replenishment snapshot for one tenant."""
    service = RecalculationService(session_factory=session_factory, cache=cache)
    try:
        summary = service.recompute(
            body.tenant_id,
            window_days=body.window_days,
            projection_horizon_days=body.projection_horizon_days,
            calculation_date=body.calculation_date,
        )
        return {"success": True, **summary.to_dict()}
    except RestockError as e:
        return error_response(e, tenant_id=body.tenant_id)
    except Exception as e:
        log.error(f"Error in /replenishment/recompute: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{tenant_id}/ranked")
async def get_ranked(
    tenant_id: str,
    calculation_date: Optional[date] = Query(None, description="Snapshot date, latest when omitted"),
    urgency: Optional[str] = Query(None, description="Filter: critical, high, medium, low"),
    refresh: bool = Query(False, description="Bypass the cache"),
    db: Session = Depends(get_db),
    cache=Depends(get_ranked_cache),
):
    """Replenishment records ranked by urgency, then days of supply."""
    try:
        service = ReplenishmentQueryService(db, cache=cache)
        result = service.get_ranked(tenant_id, calculation_date, urgency=urgency, force_refresh=refresh)
        return {
            "success": True,
            "count": len(result["records"]),
            **result,
        }
    except RestockError as e:
        raise_http(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{tenant_id}/export.csv")
async def export_ranked_csv(
    tenant_id: str,
    calculation_date: Optional[date] = Query(None, description="Snapshot date, latest when omitted"),
    db: Session = Depends(get_db),
    cache=Depends(get_ranked_cache),
):
    """Download the ranked listing as CSV."""
    try:
        service = ReplenishmentQueryService(db, cache=cache)
        filename, content = service.export_ranked_csv(tenant_id, calculation_date)
        return StreamingResponse(
            io.BytesIO(content.encode("utf-8")),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    except RestockError as e:
        raise_http(e)
    except Exception as e:
        log.error(f"Error in /replenishment/{tenant_id}/export.csv: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{tenant_id}/discontinuation-flags")
async def flag_for_discontinuation(
    tenant_id: str,
    body: DiscontinuationRequest,
    db: Session = Depends(get_db),
    cache=Depends(get_ranked_cache),
):
    """Flag variants for discontinuation review."""
    try:
        service = ReplenishmentQueryService(db, cache=cache)
        result = service.flag_for_discontinuation(tenant_id, body.variant_ids, reason=body.reason)
        return {"success": True, **result}
    except RestockError as e:
        raise_http(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{tenant_id}/variants/{variant_id}/history")
async def get_variant_history(
    tenant_id: str,
    variant_id: str,
    days: int = Query(90, description="Lookback days"),
    db: Session = Depends(get_db),
):
    """Retained replenishment records for one variant, oldest first."""
    try:
        service = ReplenishmentQueryService(db)
        history = service.get_history(tenant_id, variant_id, days=days)
        return {"success": True, "count": len(history), "data": history}
    except RestockError as e:
        raise_http(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{tenant_id}/runs")
async def list_runs(
    tenant_id: str,
    limit: int = Query(20, ge=1, le=200),
    session_factory=Depends(get_session_factory),
):
    """Recent recompute runs for a tenant, newest first."""
    try:
        service = RecalculationService(session_factory=session_factory)
        runs = service.list_runs(tenant_id, limit=limit)
        return {"success": True, "count": len(runs), "data": runs}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
