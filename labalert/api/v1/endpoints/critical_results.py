from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Dict, List, Optional, Union
from datetime import datetime
import uuid
from ....critical.classifier import CriticalRange, classify_value
from ....critical.records import CriticalResult
from ....errors import AlertingError
from ....models.critical_models import NotificationStatusEnum
from ....services import AlertingServices, get_services
from ....utils.monitoring import track_performance
from ....utils.timeutils import ensure_utc, utcnow
from ..errors import to_http_exception
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/critical-results", tags=["Critical Results"])

class CriticalResultSubmission(BaseModel):
    result_id: Optional[str] = None
    patient_id: str
    test_code: str
    test_name: Optional[str] = None
    value: Union[float, str]
    unit: str = ""
    clinician_id: str
    critical_low: Optional[float] = None
    critical_high: Optional[float] = None
    critical_text_values: List[str] = []
    reference_range: Optional[str] = None
    resulted_at: Optional[datetime] = None
    tenant_id: Optional[str] = None

class AcknowledgementRequest(BaseModel):
    acknowledged_by: str


@router.post("", response_model=Dict)
@track_performance
async def submit_patient_result(
    submission: CriticalResultSubmission,
    services: AlertingServices = Depends(get_services)
):
    """Classify a patient result and start tracking it when it is critical"""
    try:
        critical_range = CriticalRange(
            test_code=submission.test_code,
            critical_low=submission.critical_low,
            critical_high=submission.critical_high,
            critical_text_values=frozenset(submission.critical_text_values)
        )
        classification = classify_value(submission.value, submission.unit, critical_range)
        if not classification.is_critical:
            return {"critical": False, "result_id": submission.result_id}

        result = services.tracker.register(CriticalResult(
            result_id=submission.result_id or f"CR_{uuid.uuid4().hex}",
            patient_id=submission.patient_id,
            test_code=submission.test_code,
            value=submission.value,
            unit=submission.unit,
            clinician_id=submission.clinician_id,
            flagged_at=ensure_utc(submission.resulted_at) or utcnow(),
            tenant_id=submission.tenant_id or services.settings.default_tenant,
            test_name=submission.test_name,
            reference_range=submission.reference_range or critical_range.describe(),
            critical_message=classification.message
        ))
        return {"critical": True, "direction": classification.direction, **result.to_dict()}
    except AlertingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Error registering critical result: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("", response_model=List[Dict])
async def list_critical_results(
    status: NotificationStatusEnum = Query(NotificationStatusEnum.PENDING),
    services: AlertingServices = Depends(get_services)
):
    return [r.to_dict() for r in services.store.find_critical_results(status)]

@router.post("/sweep", response_model=Dict)
@track_performance
async def run_escalation_sweep(services: AlertingServices = Depends(get_services)):
    """Run one escalation sweep now, outside the periodic schedule"""
    report = await services.sweeper.sweep()
    if report.refused:
        raise HTTPException(status_code=409, detail="An escalation sweep is already running")
    return report.to_dict()

@router.get("/{result_id}", response_model=Dict)
async def get_critical_result(
    result_id: str,
    services: AlertingServices = Depends(get_services)
):
    try:
        return services.tracker.get(result_id).to_dict()
    except AlertingError as e:
        raise to_http_exception(e)

@router.post("/{result_id}/acknowledge", response_model=Dict)
@track_performance
async def acknowledge_critical_result(
    result_id: str,
    request: AcknowledgementRequest,
    services: AlertingServices = Depends(get_services)
):
    try:
        return services.tracker.acknowledge(result_id, request.acknowledged_by).to_dict()
    except AlertingError as e:
        raise to_http_exception(e)

@router.get("/{result_id}/audit", response_model=List[Dict])
async def get_critical_result_audit_trail(
    result_id: str,
    services: AlertingServices = Depends(get_services)
):
    """Every flag, notification attempt, acknowledgement and escalation, oldest first"""
    try:
        services.tracker.get(result_id)
        return [entry.to_dict() for entry in services.tracker.history(result_id)]
    except AlertingError as e:
        raise to_http_exception(e)
