"""
Ledger Entity Store Module

In-memory authoritative view of one account's borrowers, loans and audit
log, mirrored to a persistent store. Every write goes to the durable store
first and only then into memory. Synchronisation with the remote copy is a
full replace (reload), never an incremental merge; concurrent writers are
reconciled by the store's own last-writer-wins.
"""

from typing import Any, Callable, Dict, List, Optional, Set
import threading
import logging

from .errors import FieldRejected, PartialDegradation, StoreError, StoreUnavailable
from .models import AuditLog, Borrower, Loan
from .storage import AUDIT_TABLE, BORROWERS_TABLE, LOANS_TABLE, StorageInterface


class LedgerStore:
    """
    Account-scoped cache of ledger entities.

    Callers are expected to funnel mutations through a single writer (see
    commands.CommandQueue); the internal lock only keeps snapshot reads from
    observing a half-applied reload.
    """

    def __init__(self, storage: StorageInterface, account_id: str):
        self.storage = storage
        self.account_id = account_id
        self.logger = logging.getLogger("loan_ledger.store")

        self._borrowers: Dict[str, Borrower] = {}
        self._loans: Dict[str, Loan] = {}
        self._audit_logs: List[AuditLog] = []
        # Optional fields the durable store refused, kept in memory only
        self._local_only: Dict[str, Set[str]] = {}
        self._populated_listeners: List[Callable[[], None]] = []
        self._lock = threading.RLock()

        self.loaded = False
        self.last_error: Optional[StoreUnavailable] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _fetch(self, table: str) -> List[Dict[str, Any]]:
        return self.storage.find(table, {'account_id': self.account_id})

    def load(self) -> None:
        """
        Fetch the account's collections and replace the in-memory copies.

        Raises:
            StoreUnavailable: the store is unreachable or misconfigured. The
                collections are cleared so nothing stale is shown.
        """
        try:
            borrower_rows = self._fetch(BORROWERS_TABLE)
            loan_rows = self._fetch(LOANS_TABLE)
            audit_rows = self._fetch(AUDIT_TABLE)
        except StoreUnavailable as e:
            with self._lock:
                self._borrowers = {}
                self._loans = {}
                self._audit_logs = []
                self.loaded = False
                self.last_error = e
            self.logger.error(f"Ledger load failed for account {self.account_id}: {e}")
            raise

        borrowers = [Borrower.from_dict(row) for row in borrower_rows]
        borrowers.sort(key=lambda b: b.created_at)
        loans = [Loan.from_dict(row) for row in loan_rows]
        loans.sort(key=lambda l: l.created_at)
        audit_logs = [AuditLog.from_dict(row) for row in audit_rows]
        audit_logs.sort(key=lambda a: a.timestamp)

        with self._lock:
            was_empty = not self._loans
            new_loans = {}
            for loan in loans:
                # Signatures the store refused survive a reload
                existing = self._loans.get(loan.id)
                if existing and 'signature' in self._local_only.get(loan.id, set()):
                    loan.signature = existing.signature
                new_loans[loan.id] = loan
            self._borrowers = {b.id: b for b in borrowers}
            self._loans = new_loans
            self._audit_logs = audit_logs
            self._local_only = {k: v for k, v in self._local_only.items() if k in new_loans}
            self.loaded = True
            self.last_error = None

        self.logger.debug(
            f"Loaded {len(borrowers)} borrowers, {len(loans)} loans, "
            f"{len(audit_logs)} audit entries for account {self.account_id}"
        )
        if was_empty and loans:
            self._fire_populated()

    def reload(self) -> None:
        """Full replace from the durable store"""
        self.load()

    def on_populated(self, callback: Callable[[], None]) -> None:
        """Register a callback for when the loan set goes from empty to non-empty"""
        self._populated_listeners.append(callback)

    def _fire_populated(self) -> None:
        for callback in list(self._populated_listeners):
            try:
                callback()
            except Exception as e:
                self.logger.error(f"Populated callback failed: {e}")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def borrowers(self) -> List[Borrower]:
        with self._lock:
            return list(self._borrowers.values())

    def loans(self) -> List[Loan]:
        with self._lock:
            return [loan.copy() for loan in self._loans.values()]

    def audit_logs(self) -> List[AuditLog]:
        """Audit entries, most recent first"""
        with self._lock:
            return list(reversed(self._audit_logs))

    def latest_audit(self) -> Optional[AuditLog]:
        with self._lock:
            return self._audit_logs[-1] if self._audit_logs else None

    def get_borrower(self, borrower_id: str) -> Optional[Borrower]:
        with self._lock:
            return self._borrowers.get(borrower_id)

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        with self._lock:
            loan = self._loans.get(loan_id)
            return loan.copy() if loan else None

    def loans_for_borrower(self, borrower_id: str) -> List[Loan]:
        with self._lock:
            return [l.copy() for l in self._loans.values() if l.borrower_id == borrower_id]

    def local_only_fields(self, record_id: str) -> Set[str]:
        return set(self._local_only.get(record_id, set()))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        table: str,
        record_id: str,
        core: Dict[str, Any],
        optional: Optional[Dict[str, Any]] = None
    ) -> List[PartialDegradation]:
        """
        Persist core fields first, then each optional field.

        Core failures propagate. An optional field the store refuses is
        recorded as local-only and reported as a PartialDegradation instead
        of failing the write.
        """
        self.storage.save(table, record_id, core)

        warnings: List[PartialDegradation] = []
        persisted = dict(core)
        skip = self._local_only.get(record_id, set())
        for key, value in (optional or {}).items():
            if key in skip:
                continue
            candidate = dict(persisted)
            candidate[key] = value
            try:
                self.storage.save(table, record_id, candidate)
                persisted = candidate
            except StoreError as e:
                self._local_only.setdefault(record_id, set()).add(key)
                reason = e.message if isinstance(e, FieldRejected) else str(e)
                warnings.append(PartialDegradation(
                    field=key,
                    message=f"{key.capitalize()} could not be saved and is kept locally only: {reason}"
                ))
                self.logger.warning(f"Optional field '{key}' of {table}:{record_id} not persisted: {e}")
        return warnings

    def save_borrower(self, borrower: Borrower) -> None:
        self.storage.save(BORROWERS_TABLE, borrower.id, borrower.to_dict())
        with self._lock:
            self._borrowers[borrower.id] = borrower

    def save_loan(self, loan: Loan) -> List[PartialDegradation]:
        warnings = self.create(LOANS_TABLE, loan.id, loan.core_dict(), loan.optional_dict())
        was_empty = False
        with self._lock:
            was_empty = not self._loans
            self._loans[loan.id] = loan.copy()
        if was_empty:
            self._fire_populated()
        return warnings

    def remove_borrower(self, borrower_id: str) -> List[str]:
        """
        Delete a borrower and every loan that references it.

        Loan ids come from the durable store as well as memory so no orphan
        survives a stale cache.

        Returns:
            Ids of the deleted loans
        """
        durable = self.storage.find(LOANS_TABLE, {'account_id': self.account_id, 'borrower_id': borrower_id})
        loan_ids = [row['id'] for row in durable]
        for loan in self.loans_for_borrower(borrower_id):
            if loan.id not in loan_ids:
                loan_ids.append(loan.id)

        with self.storage.atomic():
            for loan_id in loan_ids:
                self.storage.delete(LOANS_TABLE, loan_id)
            self.storage.delete(BORROWERS_TABLE, borrower_id)

        with self._lock:
            for loan_id in loan_ids:
                self._loans.pop(loan_id, None)
                self._local_only.pop(loan_id, None)
            self._borrowers.pop(borrower_id, None)
        return loan_ids

    def remove_loan(self, loan_id: str) -> None:
        self.storage.delete(LOANS_TABLE, loan_id)
        with self._lock:
            self._loans.pop(loan_id, None)
            self._local_only.pop(loan_id, None)

    def append_audit(self, entry: AuditLog) -> None:
        self.storage.save(AUDIT_TABLE, entry.id, entry.to_dict())
        with self._lock:
            self._audit_logs.append(entry)
