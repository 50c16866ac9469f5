"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change of the ledger, the rate controller and the vault is logged
here, inside the same storage transaction as the change itself.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Rate events
    RATE_INITIALIZED = "rate_initialized"
    RATE_CHANGED = "rate_changed"

    # Ledger events
    TOKENS_MINTED = "tokens_minted"
    TOKENS_BURNED = "tokens_burned"
    INTEREST_MATERIALIZED = "interest_materialized"
    TOKENS_TRANSFERRED = "tokens_transferred"
    RATE_INHERITED = "rate_inherited"
    ALLOWANCE_SET = "allowance_set"

    # Vault events
    VAULT_DEPOSIT = "vault_deposit"
    VAULT_REDEEM = "vault_redeem"
    REWARDS_FUNDED = "rewards_funded"

    # Access control events
    CAPABILITY_GRANTED = "capability_granted"
    CAPABILITY_REVOKED = "capability_revoked"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int          # Position in the chain, starting at 1
    event_type: AuditEventType
    entity_type: str       # Type of entity (account, rate, vault, capability)
    entity_id: str         # ID of the affected entity
    previous_hash: str     # Hash of previous audit event for chaining
    current_hash: str      # SHA-256 hash of this event
    metadata: Dict[str, Any]
    caller: Optional[str] = None  # Identity that initiated the action

    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            # Amounts can exceed JSON number precision in other consumers
            if isinstance(value, int) and not isinstance(value, bool):
                return str(value)
            elif isinstance(value, datetime):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [convert_value(v) for v in value]
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'caller': self.caller,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage with proper enum serialization"""
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])

        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name

    def _chain_head(self) -> Dict[str, Any]:
        """Return sequence and hash of the most recent event (empty chain -> 0, "")"""
        events = self.storage.load_all(self.table_name)
        if not events:
            return {'sequence': 0, 'hash': ""}
        latest = max(events, key=lambda e: e['sequence'])
        return {'sequence': latest['sequence'], 'hash': latest['current_hash']}

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        caller: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        The chain head is re-read from storage on every call, so events
        discarded by a rolled-back transaction never leave a gap.

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            caller: Identity that initiated the action

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            head = self._chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head['sequence'] + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['hash'],
                current_hash="",
                caller=caller,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of (most recent) events to return
        """
        events_data = self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        )
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType,
                           limit: Optional[int] = None) -> List[AuditEvent]:
        """Get audit events of one type, oldest first"""
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self) -> List[AuditEvent]:
        """Get all audit events in chain order"""
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit event"""
        return self._chain_head()['hash'] or None
