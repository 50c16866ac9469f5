"""
Access Control Module

Capability-based authorization for privileged ledger operations. The ledger
and rate controller only ask whether a caller holds a capability; granting
and revoking is reserved to the owner.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Set

from .audit import AuditEventType, AuditTrail
from .errors import Unauthorized
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger("accrual_vault.rbac")


class Capability(Enum):
    """Privileged capabilities"""
    MINT_AND_BURN = "mint_and_burn"
    RATE_ADMIN = "rate_admin"


class AccessControl:
    """Owner-administered capability sets, persisted per holder"""

    def __init__(self, storage: StorageInterface, owner: str,
                 audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.owner = owner
        self.audit = audit_trail
        self.table_name = "capabilities"

        # The owner administers the global rate
        if not self.has_capability(owner, Capability.RATE_ADMIN):
            self._store(owner, self.capabilities_of(owner) | {Capability.RATE_ADMIN})

    def capabilities_of(self, holder: str) -> Set[Capability]:
        """Get the capabilities currently granted to a holder"""
        data = self.storage.load(self.table_name, holder)
        if not data:
            return set()
        return {Capability(value) for value in data['capabilities']}

    def has_capability(self, holder: str, capability: Capability) -> bool:
        return capability in self.capabilities_of(holder)

    def require(self, holder: str, capability: Capability) -> None:
        """Raise Unauthorized unless the holder has the capability"""
        if not self.has_capability(holder, capability):
            log_action(logger, "warning", "Capability check failed",
                       caller=holder, action="authorize",
                       extra={"capability": capability.value})
            raise Unauthorized(holder, capability.value)

    def grant(self, caller: str, holder: str, capability: Capability) -> None:
        """Grant a capability; only the owner may do this"""
        self._require_owner(caller, capability)
        with self.storage.atomic():
            self._store(holder, self.capabilities_of(holder) | {capability})
            self._audit(AuditEventType.CAPABILITY_GRANTED, caller, holder, capability)
        log_action(logger, "info", "Capability granted", caller=caller,
                   account=holder, action="grant", extra={"capability": capability.value})

    def revoke(self, caller: str, holder: str, capability: Capability) -> None:
        """Revoke a capability; only the owner may do this"""
        self._require_owner(caller, capability)
        with self.storage.atomic():
            self._store(holder, self.capabilities_of(holder) - {capability})
            self._audit(AuditEventType.CAPABILITY_REVOKED, caller, holder, capability)
        log_action(logger, "info", "Capability revoked", caller=caller,
                   account=holder, action="revoke", extra={"capability": capability.value})

    def _require_owner(self, caller: str, capability: Capability) -> None:
        if caller != self.owner:
            raise Unauthorized(caller, f"owner (to administer {capability.value})")

    def _store(self, holder: str, capabilities: Set[Capability]) -> None:
        self.storage.save(self.table_name, holder, {
            'id': holder,
            'capabilities': sorted(c.value for c in capabilities),
            'updated_at': datetime.now(timezone.utc).isoformat()
        })

    def _audit(self, event_type: AuditEventType, caller: str, holder: str,
               capability: Capability) -> None:
        if self.audit:
            self.audit.log_event(
                event_type=event_type,
                entity_type="capability",
                entity_id=holder,
                metadata={"capability": capability.value},
                caller=caller
            )
