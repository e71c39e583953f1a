from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Dict, List, Optional
from datetime import datetime
import uuid
from ....models.qc_models import ControlLevelEnum, WestgardRuleEnum
from ....errors import AlertingError
from ....qc.lot_statistics import propose_target
from ....qc.records import DEFAULT_RULES, QCAnalyteTarget, QCMeasurement
from ....services import AlertingServices, get_services
from ....utils.monitoring import track_performance
from ....utils.timeutils import ensure_utc, utcnow
from ..errors import to_http_exception
from pydantic import BaseModel, Field
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/qc", tags=["Quality Control"])

# Pydantic models for request/response
class QCTargetRequest(BaseModel):
    test_code: str
    control_level: ControlLevelEnum
    target_mean: float
    target_sd: float = Field(..., gt=0)
    lot_number: Optional[str] = None
    acceptable_low: Optional[float] = None
    acceptable_high: Optional[float] = None
    enabled_rules: Optional[List[WestgardRuleEnum]] = None
    tenant_id: Optional[str] = None

class QCMeasurementSubmission(BaseModel):
    measurement_id: Optional[str] = None
    test_code: str
    test_name: Optional[str] = None
    control_level: ControlLevelEnum
    value: float
    unit: str
    measured_at: Optional[datetime] = None
    operator_id: str
    instrument_id: Optional[str] = None
    tenant_id: Optional[str] = None

class BulkQCSubmission(BaseModel):
    measurements: List[QCMeasurementSubmission]


def _tenant(services: AlertingServices, tenant_id: Optional[str]) -> str:
    return tenant_id or services.settings.default_tenant

def _to_measurement(submission: QCMeasurementSubmission, services: AlertingServices) -> QCMeasurement:
    return QCMeasurement(
        measurement_id=submission.measurement_id or f"QC_{uuid.uuid4().hex}",
        test_code=submission.test_code,
        control_level=submission.control_level,
        value=submission.value,
        unit=submission.unit,
        timestamp=ensure_utc(submission.measured_at) or utcnow(),
        operator_id=submission.operator_id,
        tenant_id=_tenant(services, submission.tenant_id),
        test_name=submission.test_name,
        instrument_id=submission.instrument_id
    )


@router.post("/targets", response_model=Dict, status_code=201)
@track_performance
async def activate_qc_target(
    request: QCTargetRequest,
    services: AlertingServices = Depends(get_services)
):
    """Activate the target mean/SD of a new control lot"""
    try:
        target = QCAnalyteTarget(
            test_code=request.test_code,
            control_level=request.control_level,
            target_mean=request.target_mean,
            target_sd=request.target_sd,
            enabled_rules=tuple(request.enabled_rules) if request.enabled_rules is not None else DEFAULT_RULES,
            acceptable_low=request.acceptable_low,
            acceptable_high=request.acceptable_high,
            lot_number=request.lot_number,
            tenant_id=_tenant(services, request.tenant_id)
        )
        services.evaluator.activate_target(target)
        return {
            "success": True,
            "test_code": target.test_code,
            "control_level": target.control_level.value,
            "lot_number": target.lot_number,
            "enabled_rules": [rule.value for rule in target.enabled_rules]
        }
    except AlertingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Error activating QC target: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/targets/{test_code}/{control_level}", response_model=Dict)
async def get_qc_target(
    test_code: str,
    control_level: ControlLevelEnum,
    tenant_id: Optional[str] = Query(None),
    services: AlertingServices = Depends(get_services)
):
    try:
        target = services.evaluator.get_target((_tenant(services, tenant_id), test_code, control_level))
    except AlertingError as e:
        raise to_http_exception(e)
    return {
        "test_code": target.test_code,
        "control_level": target.control_level.value,
        "lot_number": target.lot_number,
        "target_mean": target.target_mean,
        "target_sd": target.target_sd,
        "acceptable_low": target.acceptable_low,
        "acceptable_high": target.acceptable_high,
        "enabled_rules": [rule.value for rule in target.enabled_rules]
    }

@router.post("/measurements", response_model=Dict)
@track_performance
async def submit_qc_measurement(
    submission: QCMeasurementSubmission,
    services: AlertingServices = Depends(get_services)
):
    """Submit a single QC result and evaluate it against the Westgard rules"""
    try:
        measurement = _to_measurement(submission, services)
        result = await services.evaluator.evaluate(measurement)
        return {
            "success": True,
            "measurement": measurement.to_dict(),
            "evaluation": result.to_dict()
        }
    except AlertingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Error submitting QC measurement: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/measurements/bulk", response_model=Dict)
@track_performance
async def bulk_submit_qc_measurements(
    submission: BulkQCSubmission,
    services: AlertingServices = Depends(get_services)
):
    """Evaluate a batch in order; rejected measurements are reported, not raised"""
    measurements = [_to_measurement(item, services) for item in submission.measurements]
    outcome = await services.evaluator.evaluate_many(measurements)
    return {
        "success": not outcome.rejected,
        "evaluated_count": len(outcome.evaluated),
        "rejected_count": len(outcome.rejected),
        **outcome.to_dict()
    }

@router.get("/measurements/{measurement_id}/audit", response_model=List[Dict])
async def get_qc_measurement_audit_trail(
    measurement_id: str,
    services: AlertingServices = Depends(get_services)
):
    """QC failure notifications sent for one measurement"""
    return [entry.to_dict() for entry in services.evaluator.history(measurement_id)]

@router.get("/statistics/{test_code}/{control_level}", response_model=Dict)
async def get_qc_statistics(
    test_code: str,
    control_level: ControlLevelEnum,
    tenant_id: Optional[str] = Query(None),
    services: AlertingServices = Depends(get_services)
):
    stats = services.evaluator.get_statistics((_tenant(services, tenant_id), test_code, control_level))
    return stats.to_dict()

@router.get("/lots/{test_code}/{control_level}/statistics", response_model=Dict)
@track_performance
async def get_lot_statistics(
    test_code: str,
    control_level: ControlLevelEnum,
    tenant_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=2, le=1000),
    services: AlertingServices = Depends(get_services)
):
    """Mean, SD, CV, drift and bias of the recent QC points against the active target"""
    try:
        stats = services.evaluator.lot_statistics((_tenant(services, tenant_id), test_code, control_level), limit)
        return stats.to_dict()
    except AlertingError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("/lots/{test_code}/{control_level}/proposed-target", response_model=Dict)
async def get_proposed_target(
    test_code: str,
    control_level: ControlLevelEnum,
    tenant_id: Optional[str] = Query(None),
    limit: int = Query(20, ge=20, le=1000),
    services: AlertingServices = Depends(get_services)
):
    """Validate the recent points as a baseline for a new lot and propose its mean/SD"""
    key = (_tenant(services, tenant_id), test_code, control_level)
    return propose_target(services.store.recent_measurements(key, limit))
