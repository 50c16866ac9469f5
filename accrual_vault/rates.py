"""
Rate Controller Module

Holds the single global accrual rate applied to new deposits. The rate is a
fixed-point value scaled by 1e18 and may only ever move downward.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from .accrual import validate_uint
from .audit import AuditTrail, AuditEventType
from .errors import RateIncreaseRejected
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .logging_config import get_logger, log_action
from .rbac import AccessControl, Capability
from .storage import StorageInterface


logger = get_logger("accrual_vault.rates")


class RateController(EventPublisherMixin):
    """
    Global rate with a non-increasing setter

    The stored value lives in the `ledger_state` table; every accepted value
    is appended to `rate_history`.
    """

    RATE_RECORD_ID = "global_rate"

    def __init__(
        self,
        storage: StorageInterface,
        access_control: AccessControl,
        audit_trail: AuditTrail,
        event_dispatcher: EventDispatcher,
        initial_rate: int
    ):
        self.storage = storage
        self.access_control = access_control
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher

        self.state_table = "ledger_state"
        self.history_table = "rate_history"

        if self.storage.load(self.state_table, self.RATE_RECORD_ID) is None:
            validate_uint(initial_rate, "rate")
            with self.storage.atomic():
                self._store_rate(initial_rate)
                self._append_history(initial_rate, changed_by=None)
                self.audit_trail.log_event(
                    event_type=AuditEventType.RATE_INITIALIZED,
                    entity_type="rate",
                    entity_id=self.RATE_RECORD_ID,
                    metadata={"rate": initial_rate}
                )

    def get_rate(self) -> int:
        """Current global rate (pure read)"""
        data = self.storage.load(self.state_table, self.RATE_RECORD_ID)
        return int(data['value'])

    def set_rate(self, new_rate: int, caller: str) -> None:
        """
        Replace the global rate with a value no greater than the current one

        Args:
            new_rate: New rate, scaled by 1e18
            caller: Identity performing the change; needs RATE_ADMIN

        Raises:
            Unauthorized: If caller lacks RATE_ADMIN
            InvalidAmount: If new_rate is not a non-negative integer
            RateIncreaseRejected: If new_rate is above the current rate
        """
        self.access_control.require(caller, Capability.RATE_ADMIN)
        validate_uint(new_rate, "rate")

        with self.event_dispatcher.deferred(), self.storage.atomic():
            current = self.get_rate()
            if new_rate > current:
                log_action(logger, "warning", "Rate increase rejected", caller=caller,
                           action="set_rate",
                           extra={"current_rate": str(current), "requested_rate": str(new_rate)})
                raise RateIncreaseRejected(current, new_rate)

            self._store_rate(new_rate)
            self._append_history(new_rate, changed_by=caller)
            self.audit_trail.log_event(
                event_type=AuditEventType.RATE_CHANGED,
                entity_type="rate",
                entity_id=self.RATE_RECORD_ID,
                metadata={"previous_rate": current, "new_rate": new_rate},
                caller=caller
            )
            self.publish_event(DomainEvent.RATE_CHANGED, "rate", self.RATE_RECORD_ID,
                               {"previous_rate": str(current), "new_rate": str(new_rate)})

        log_action(logger, "info", "Global rate updated", caller=caller, action="set_rate",
                   extra={"previous_rate": str(current), "new_rate": str(new_rate)})

    def get_rate_history(self) -> List[Dict[str, Any]]:
        """Every accepted rate, oldest first"""
        entries = self.storage.load_all(self.history_table)
        entries.sort(key=lambda e: e['sequence'])
        return [
            {
                'sequence': e['sequence'],
                'rate': int(e['rate']),
                'changed_by': e['changed_by'],
                'changed_at': e['changed_at']
            }
            for e in entries
        ]

    def _store_rate(self, rate: int) -> None:
        self.storage.save(self.state_table, self.RATE_RECORD_ID, {
            'id': self.RATE_RECORD_ID,
            'value': str(rate)
        })

    def _append_history(self, rate: int, changed_by: Optional[str]) -> None:
        sequence = self.storage.count(self.history_table) + 1
        self.storage.save(self.history_table, str(sequence), {
            'id': str(sequence),
            'sequence': sequence,
            'rate': str(rate),
            'changed_by': changed_by,
            'changed_at': datetime.now(timezone.utc).isoformat()
        })

