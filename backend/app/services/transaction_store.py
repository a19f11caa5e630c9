"""
STORE DES TRANSACTIONS - index mémoire + miroir durable

Index primaire : internal_reference -> Transaction
Index secondaire : correlation_id (CheckoutRequestID) -> internal_reference

Toute écriture est validée par le miroir durable AVANT que l'index mémoire
ne change. Les mises à jour concurrentes d'une même transaction passent
par lock_for(reference).
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional, Set

from app.exceptions import DuplicateKeyError, NotFoundError, StoreIntegrityError
from app.models.payment_models import PaymentStatus
from app.schemas.transaction_schemas import Transaction
from app.services.transaction_mirror import TransactionMirror

logger = logging.getLogger(__name__)


class TransactionStore:
    def __init__(self, mirror: TransactionMirror):
        self._mirror = mirror
        self._records: Dict[str, Transaction] = {}
        self._by_correlation: Dict[str, str] = {}
        self._record_locks: Dict[str, threading.Lock] = {}

        # Clés réservées pendant qu'une écriture durable est en cours
        self._reserved_refs: Set[str] = set()
        self._reserved_correlations: Set[str] = set()
        self._index_lock = threading.Lock()

    def load(self) -> int:
        """Reconstruire les deux index depuis le miroir durable."""
        records = sorted(self._mirror.load_all(), key=lambda r: (r.created_at, r.internal_reference))

        with self._index_lock:
            self._records.clear()
            self._by_correlation.clear()
            for record in records:
                self._records[record.internal_reference] = record
                if record.correlation_id:
                    self._by_correlation[record.correlation_id] = record.internal_reference

        logger.info(f"📂 {len(records)} transactions chargées depuis le miroir durable")
        return len(records)

    def close(self):
        self._mirror.close()

    # ==================== LECTURE ====================

    def exists(self, reference: str) -> bool:
        with self._index_lock:
            return reference in self._records or reference in self._reserved_refs

    def get_by_reference(self, reference: str) -> Transaction:
        with self._index_lock:
            record = self._records.get(reference)
        if record is None:
            raise NotFoundError(f"Transaction introuvable: {reference}")
        return record.model_copy(deep=True)

    def get_by_correlation_id(self, correlation_id: str) -> Transaction:
        with self._index_lock:
            reference = self._by_correlation.get(correlation_id) if correlation_id else None
            record = self._records.get(reference) if reference else None
        if record is None:
            raise NotFoundError(f"Aucune transaction pour CheckoutRequestID {correlation_id}")
        return record.model_copy(deep=True)

    def list_all(self) -> List[Transaction]:
        with self._index_lock:
            records = list(self._records.values())
        return [record.model_copy(deep=True) for record in records]

    def list_pending(self, older_than: Optional[datetime] = None) -> List[Transaction]:
        return [
            record for record in self.list_all()
            if record.status == PaymentStatus.PENDING
            and (older_than is None or record.created_at <= older_than)
        ]

    def count(self) -> int:
        with self._index_lock:
            return len(self._records)

    # ==================== ÉCRITURE ====================

    def create(self, record: Transaction) -> Transaction:
        reference = record.internal_reference
        correlation_id = record.correlation_id

        with self._index_lock:
            if reference in self._records or reference in self._reserved_refs:
                raise DuplicateKeyError(f"Référence déjà utilisée: {reference}")
            if correlation_id and (
                correlation_id in self._by_correlation or correlation_id in self._reserved_correlations
            ):
                raise DuplicateKeyError(f"CheckoutRequestID déjà associé: {correlation_id}")
            self._reserved_refs.add(reference)
            if correlation_id:
                self._reserved_correlations.add(correlation_id)

        stored = record.model_copy(deep=True)
        saved = False
        try:
            self._mirror.save(stored)
            saved = True
        finally:
            with self._index_lock:
                self._reserved_refs.discard(reference)
                if correlation_id:
                    self._reserved_correlations.discard(correlation_id)
                if saved:
                    self._records[reference] = stored
                    if correlation_id:
                        self._by_correlation[correlation_id] = reference

        return stored.model_copy(deep=True)

    def update(self, record: Transaction) -> Transaction:
        """Remplacement complet. À appeler sous lock_for(reference)."""
        reference = record.internal_reference
        new_correlation = None

        with self._index_lock:
            current = self._records.get(reference)
            if current is None:
                raise NotFoundError(f"Transaction introuvable: {reference}")

            if current.correlation_id and record.correlation_id != current.correlation_id:
                raise StoreIntegrityError(f"CheckoutRequestID immuable pour {reference}")

            if record.correlation_id and not current.correlation_id:
                new_correlation = record.correlation_id
                if new_correlation in self._by_correlation or new_correlation in self._reserved_correlations:
                    raise DuplicateKeyError(f"CheckoutRequestID déjà associé: {new_correlation}")
                self._reserved_correlations.add(new_correlation)

        stored = record.model_copy(deep=True)
        saved = False
        try:
            self._mirror.save(stored)
            saved = True
        finally:
            with self._index_lock:
                if new_correlation:
                    self._reserved_correlations.discard(new_correlation)
                if saved:
                    self._records[reference] = stored
                    if new_correlation:
                        self._by_correlation[new_correlation] = reference

        return stored.model_copy(deep=True)

    @contextmanager
    def lock_for(self, reference: str):
        """Exclusion mutuelle limitée à une seule transaction.

        Le verrou est libéré de l'index dès que la transaction est terminale :
        COMPLETED et FAILED étant absorbants, un verrou recréé plus tard ne
        protège plus qu'une relecture sans effet.
        """
        with self._index_lock:
            lock = self._record_locks.setdefault(reference, threading.Lock())
        with lock:
            yield
            with self._index_lock:
                record = self._records.get(reference)
                if record is not None and record.is_terminal and self._record_locks.get(reference) is lock:
                    del self._record_locks[reference]

    def tracked_lock_count(self) -> int:
        with self._index_lock:
            return len(self._record_locks)
