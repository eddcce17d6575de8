"""
Audit Trail Module

Hash-chained, append-only log of every ledger mutation, with SHA-256 chaining
for tamper detection. Recording is fire-and-forget: a failed audit write is
logged and never fails the operation it describes.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from .dates import utcnow
from .models import AuditAction, AuditLog
from .storage import AUDIT_TABLE
from .store import LedgerStore


def calculate_hash(entry: AuditLog) -> str:
    """
    SHA-256 of the entry's fields except current_hash, over a deterministic
    JSON encoding
    """
    json_data = json.dumps(entry.hash_payload(), sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(json_data.encode('utf-8')).hexdigest()


class AuditLogger:
    """
    Appends audit entries for one account through the ledger store
    """

    def __init__(self, store: LedgerStore, enabled: bool = True, clock=utcnow):
        self.store = store
        self.enabled = enabled
        self.clock = clock
        self.logger = logging.getLogger("loan_ledger.audit")
        self.failures = 0

    def _next_timestamp(self, previous: Optional[AuditLog]) -> datetime:
        # Keep timestamps strictly increasing so ordering by time is the chain order
        now = self.clock()
        if previous and now <= previous.timestamp:
            now = previous.timestamp + timedelta(microseconds=1)
        return now

    def record(
        self,
        action: Union[AuditAction, str],
        details: str,
        entity_id: Optional[str] = None
    ) -> Optional[AuditLog]:
        """
        Append one audit entry.

        Args:
            action: Action tag from the controlled vocabulary
            details: Human-readable description
            entity_id: Borrower or loan the action concerns

        Returns:
            The stored entry, or None if auditing is disabled or the write failed
        """
        if not self.enabled:
            return None

        action_tag = action.value if isinstance(action, AuditAction) else str(action)
        try:
            previous = self.store.latest_audit()
            entry = AuditLog(
                id=str(uuid.uuid4()),
                account_id=self.store.account_id,
                action=action_tag,
                timestamp=self._next_timestamp(previous),
                details=details,
                entity_id=entity_id,
                previous_hash=previous.current_hash if previous else "",
            )
            entry = replace(entry, current_hash=calculate_hash(entry))
            self.store.append_audit(entry)
            return entry
        except Exception as e:
            # The mutation being audited is already committed
            self.failures += 1
            self.logger.error(f"Failed to record audit entry {action_tag} for {entity_id}: {e}")
            return None

    def list_entries(self, limit: Optional[int] = None) -> List[AuditLog]:
        """Entries most recent first"""
        entries = self.store.audit_logs()
        if limit:
            entries = entries[:limit]
        return entries

    def entries_for_entity(self, entity_id: str) -> List[AuditLog]:
        """Entries for one borrower or loan, most recent first"""
        return [e for e in self.store.audit_logs() if e.entity_id == entity_id]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the account's durable audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        rows = self.store.storage.find(AUDIT_TABLE, {'account_id': self.store.account_id})
        if not rows:
            return result

        entries = [AuditLog.from_dict(row) for row in rows]
        entries.sort(key=lambda x: x.timestamp)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for i, entry in enumerate(entries):
            expected = calculate_hash(entry)
            if entry.current_hash != expected:
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_hash': expected,
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
