from fastapi import APIRouter, Depends, Query
from typing import Dict, List, Optional
from ....notifications.roster import CapabilityEnum, StaffMember
from ....services import AlertingServices, get_services
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/roster", tags=["Notification Roster"])

class StaffRequest(BaseModel):
    user_id: str
    name: Optional[str] = None
    capabilities: List[CapabilityEnum] = []
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None
    notifications_enabled: bool = True
    tenant_id: Optional[str] = None


@router.post("/staff", response_model=Dict)
async def save_staff_member(
    request: StaffRequest,
    services: AlertingServices = Depends(get_services)
):
    """Create or replace a roster entry"""
    member = StaffMember(
        user_id=request.user_id,
        name=request.name,
        capabilities=frozenset(request.capabilities),
        phone=request.phone,
        email=request.email,
        push_token=request.push_token,
        notifications_enabled=request.notifications_enabled,
        tenant_id=request.tenant_id or services.settings.default_tenant
    )
    services.resolver.upsert(member)
    return member.to_dict()

@router.get("/staff", response_model=List[Dict])
async def list_staff(
    tenant_id: Optional[str] = Query(None),
    services: AlertingServices = Depends(get_services)
):
    return [m.to_dict() for m in services.resolver.list_staff(tenant_id or services.settings.default_tenant)]
