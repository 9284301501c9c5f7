"""
Sales metric duplication API

Operator actions for duplicated SalesWindowMetric rows. Each action is
invoked separately; clean is never run automatically after investigate.
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from datetime import date
from typing import Optional

from restock.api.deps import get_session_factory, error_response
from restock.services.errors import RestockError
from restock.services.metric_duplication_service import MetricDuplicationService
from restock.utils.logger import log

router = APIRouter(prefix="/sales-metrics/duplicates", tags=["sales-metrics"])


class DuplicationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str
    metric_date: date = Field(..., alias="date")
    sku: Optional[str] = None


@router.post("/investigate")
def investigate(body: DuplicationRequest, session_factory=Depends(get_session_factory)):
    """Report duplicated metric rows for one date."""
    try:
        service = MetricDuplicationService(session_factory=session_factory)
        return {"success": True, **service.investigate(body.tenant_id, body.metric_date, sku=body.sku)}
    except RestockError as e:
        return error_response(e)
    except Exception as e:
        log.error(f"Error in /sales-metrics/duplicates/investigate: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/clean")
def clean(body: DuplicationRequest, session_factory=Depends(get_session_factory)):
    """Keep the latest row per (variant, date) and delete the rest."""
    try:
        service = MetricDuplicationService(session_factory=session_factory)
        return {"success": True, **service.clean(body.tenant_id, body.metric_date, sku=body.sku)}
    except RestockError as e:
        return error_response(e)
    except Exception as e:
        log.error(f"Error in /sales-metrics/duplicates/clean: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/validate")
def validate(body: DuplicationRequest, session_factory=Depends(get_session_factory)):
    """Confirm at most one metric row per (variant, date)."""
    try:
        service = MetricDuplicationService(session_factory=session_factory)
        return {"success": True, **service.validate(body.tenant_id, body.metric_date)}
    except RestockError as e:
        return error_response(e)
    except Exception as e:
        log.error(f"Error in /sales-metrics/duplicates/validate: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
