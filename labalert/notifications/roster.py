import enum
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..models.critical_models import StaffContact
from .dispatcher import Recipient

logger = logging.getLogger(__name__)


class CapabilityEnum(enum.Enum):
    QC_MANAGER = "qc_manager"
    ON_CALL_PHYSICIAN = "on_call_physician"
    LAB_SUPERVISOR = "lab_supervisor"


# Who hears about a critical result nobody acknowledged
ESCALATION_CAPABILITIES = (CapabilityEnum.ON_CALL_PHYSICIAN, CapabilityEnum.LAB_SUPERVISOR)


@dataclass(frozen=True)
class StaffMember:
    user_id: str
    name: Optional[str] = None
    capabilities: FrozenSet[CapabilityEnum] = field(default_factory=frozenset)
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None
    notifications_enabled: bool = True
    tenant_id: str = "default"

    def as_recipient(self) -> Recipient:
        return Recipient(
            recipient_id=self.user_id,
            name=self.name,
            phone=self.phone,
            email=self.email,
            push_token=self.push_token
        )

    def to_dict(self) -> Dict:
        return {
            'user_id': self.user_id,
            'tenant_id': self.tenant_id,
            'name': self.name,
            'capabilities': sorted(c.value for c in self.capabilities),
            'phone': self.phone,
            'email': self.email,
            'push_token': self.push_token,
            'notifications_enabled': self.notifications_enabled
        }


class RecipientResolver(ABC):
    """Maps user ids and capabilities to notification contacts."""

    @abstractmethod
    def resolve_user(self, tenant_id: str, user_id: str) -> Optional[Recipient]:
        ...

    @abstractmethod
    def resolve_capability(self, tenant_id: str, capability: CapabilityEnum) -> List[Recipient]:
        ...

    @abstractmethod
    def upsert(self, member: StaffMember) -> None:
        ...

    @abstractmethod
    def list_staff(self, tenant_id: str) -> List[StaffMember]:
        ...

    def resolve_capabilities(self, tenant_id: str, capabilities: Sequence[CapabilityEnum],
                             exclude: Sequence[str] = ()) -> List[Recipient]:
        """Union of several capabilities, each person once, minus ``exclude``"""
        seen = set(exclude)
        recipients = []
        for capability in capabilities:
            for recipient in self.resolve_capability(tenant_id, capability):
                if recipient.recipient_id not in seen:
                    seen.add(recipient.recipient_id)
                    recipients.append(recipient)
        return recipients


class StaticRoster(RecipientResolver):
    """In-memory roster, for tests and single-node deployments."""

    def __init__(self, members: Sequence[StaffMember] = ()):
        self._lock = threading.Lock()
        self._members: Dict[tuple, StaffMember] = {}
        for member in members:
            self.upsert(member)

    def upsert(self, member: StaffMember) -> None:
        with self._lock:
            self._members[(member.tenant_id, member.user_id)] = member

    def list_staff(self, tenant_id: str) -> List[StaffMember]:
        with self._lock:
            return [m for (tenant, _), m in self._members.items() if tenant == tenant_id]

    def resolve_user(self, tenant_id: str, user_id: str) -> Optional[Recipient]:
        with self._lock:
            member = self._members.get((tenant_id, user_id))
        if member is None or not member.notifications_enabled:
            return None
        return member.as_recipient()

    def resolve_capability(self, tenant_id: str, capability: CapabilityEnum) -> List[Recipient]:
        return [
            m.as_recipient() for m in self.list_staff(tenant_id)
            if m.notifications_enabled and capability in m.capabilities
        ]


class SqlRosterResolver(RecipientResolver):
    """Roster backed by the ``staff_contacts`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def upsert(self, member: StaffMember) -> None:
        with self._session_factory() as db:
            row = db.query(StaffContact).filter(
                StaffContact.tenant_id == member.tenant_id,
                StaffContact.user_id == member.user_id
            ).first()
            if row is None:
                row = StaffContact(tenant_id=member.tenant_id, user_id=member.user_id)
                db.add(row)
            row.name = member.name
            row.roles = sorted(c.value for c in member.capabilities)
            row.phone_number = member.phone
            row.email = member.email
            row.push_token = member.push_token
            row.notifications_enabled = member.notifications_enabled
            db.commit()
        logger.info(f"Roster entry {member.user_id} saved for tenant {member.tenant_id}")

    def list_staff(self, tenant_id: str) -> List[StaffMember]:
        with self._session_factory() as db:
            rows = db.query(StaffContact).filter(
                StaffContact.tenant_id == tenant_id
            ).order_by(StaffContact.user_id).all()
            return [_member_from_row(row) for row in rows]

    def resolve_user(self, tenant_id: str, user_id: str) -> Optional[Recipient]:
        with self._session_factory() as db:
            row = db.query(StaffContact).filter(
                StaffContact.tenant_id == tenant_id,
                StaffContact.user_id == user_id,
                StaffContact.notifications_enabled.is_(True)
            ).first()
            return _member_from_row(row).as_recipient() if row else None

    def resolve_capability(self, tenant_id: str, capability: CapabilityEnum) -> List[Recipient]:
        # roles is a JSON list, so filter in Python rather than per-dialect JSON operators
        return [
            m.as_recipient() for m in self.list_staff(tenant_id)
            if m.notifications_enabled and capability in m.capabilities
        ]


def _member_from_row(row: StaffContact) -> StaffMember:
    capabilities = []
    for code in row.roles or []:
        try:
            capabilities.append(CapabilityEnum(code))
        except ValueError:
            logger.warning(f"Ignoring unknown role '{code}' for staff member {row.user_id}")
    return StaffMember(
        user_id=row.user_id,
        name=row.name,
        capabilities=frozenset(capabilities),
        phone=row.phone_number,
        email=row.email,
        push_token=row.push_token,
        notifications_enabled=row.notifications_enabled,
        tenant_id=row.tenant_id
    )
