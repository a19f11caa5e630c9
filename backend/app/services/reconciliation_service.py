"""
MOTEUR DE RÉCONCILIATION - seul écrivain du statut des transactions

Machine à états par transaction :
    PENDING --(ResultCode 0)--------------> COMPLETED
    PENDING --(ResultCode ≠ 0, ≠ en cours)-> FAILED
    PENDING --(en cours)------------------> PENDING (aucun effet)

COMPLETED et FAILED sont absorbants : la première résolution gagne, les
callbacks rejoués ou les polls tardifs ne modifient plus rien.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from app.exceptions import GatewayError, InProgressError, NotFoundError
from app.models.payment_models import PaymentStatus
from app.schemas.transaction_schemas import Transaction
from app.services.mpesa_service import MpesaService
from app.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0"
IN_PROGRESS_CODE = MpesaService.PROCESSING_ERROR_CODE

SOURCE_CALLBACK = "callback"
SOURCE_POLL = "poll"


@dataclass
class ResolutionOutcome:
    record: Transaction
    transitioned: bool


def parse_callback_metadata(items: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    """[{"Name": ..., "Value": ...}] -> {Name: Value}. Les items sans Value sont ignorés."""
    metadata = {}
    for item in items or []:
        name = item.get("Name")
        if name and item.get("Value") is not None:
            metadata[name] = item["Value"]
    return metadata


def _receipt_fields(metadata: Dict[str, Any]) -> Dict[str, Any]:
    fields = {}
    if "MpesaReceiptNumber" in metadata:
        fields["provider_receipt_id"] = str(metadata["MpesaReceiptNumber"])
    if "Amount" in metadata:
        try:
            fields["provider_confirmed_amount"] = float(metadata["Amount"])
        except (TypeError, ValueError):
            logger.warning(f"⚠️ Montant de callback illisible: {metadata['Amount']!r}")
    if "PhoneNumber" in metadata:
        fields["provider_confirmed_phone"] = str(metadata["PhoneNumber"])
    if "TransactionDate" in metadata:
        fields["provider_timestamp"] = str(metadata["TransactionDate"])
    return fields


class ReconciliationService:
    def __init__(self, store: TransactionStore, mpesa_service: Optional[MpesaService] = None):
        self.store = store
        self.mpesa_service = mpesa_service

    def resolve_by_correlation_id(
        self,
        correlation_id: str,
        result_code,
        result_description: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        source: str = SOURCE_CALLBACK,
    ) -> ResolutionOutcome:
        record = self.store.get_by_correlation_id(correlation_id)
        return self._resolve(record.internal_reference, result_code, result_description, metadata, source)

    def resolve_by_reference(
        self,
        reference: str,
        result_code,
        result_description: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        source: str = SOURCE_POLL,
    ) -> ResolutionOutcome:
        self.store.get_by_reference(reference)
        return self._resolve(reference, result_code, result_description, metadata, source)

    def _resolve(self, reference, result_code, result_description, metadata, source) -> ResolutionOutcome:
        code = str(result_code).strip()

        with self.store.lock_for(reference):
            # Relire sous verrou : un callback concurrent a pu finaliser entre-temps
            record = self.store.get_by_reference(reference)

            if record.is_terminal:
                logger.info(
                    f"🔁 {source} ignoré - {reference} déjà {record.status.value} "
                    f"(reçu: {code}, conservé: {record.result_code})"
                )
                return ResolutionOutcome(record, False)

            if not record.correlation_id:
                logger.warning(f"⚠️ {reference} sans CheckoutRequestID - résolution impossible")
                return ResolutionOutcome(record, False)

            if code == IN_PROGRESS_CODE:
                logger.debug(f"⏳ {reference} toujours en cours côté M-Pesa")
                return ResolutionOutcome(record, False)

            changes = {
                "result_code": code,
                "result_description": result_description,
                "resolution_source": source,
                "terminal_at": datetime.now(timezone.utc),
            }
            if code == SUCCESS_CODE:
                changes["status"] = PaymentStatus.COMPLETED
                changes.update(_receipt_fields(metadata or {}))
            else:
                changes["status"] = PaymentStatus.FAILED

            updated = self.store.update(record.model_copy(update=changes))

        if updated.status == PaymentStatus.COMPLETED:
            logger.info(
                f"✅ Paiement confirmé - {reference}, reçu: {updated.provider_receipt_id}, "
                f"montant: {updated.provider_confirmed_amount or updated.amount}, via {source}"
            )
        else:
            logger.info(f"❌ Paiement échoué - {reference}, code: {code}, raison: {result_description}, via {source}")

        return ResolutionOutcome(updated, True)

    def poll_and_resolve(self, record: Transaction) -> ResolutionOutcome:
        """Interroger M-Pesa pour une transaction PENDING et réconcilier le résultat.

        Aucun verrou n'est tenu pendant l'appel réseau. ProviderError,
        AuthError et NetworkError remontent à l'appelant.
        """
        if record.is_terminal or not record.correlation_id:
            return ResolutionOutcome(record, False)
        if self.mpesa_service is None:
            raise RuntimeError("Aucun client M-Pesa configuré pour le poll")

        try:
            status = self.mpesa_service.query_push_status(record.correlation_id)
        except InProgressError as e:
            return self.resolve_by_reference(
                record.internal_reference, IN_PROGRESS_CODE, e.message, source=SOURCE_POLL
            )

        return self.resolve_by_reference(
            record.internal_reference, status.result_code, status.result_description, source=SOURCE_POLL
        )

    def sweep_stale_transactions(self, pending_timeout_seconds: float, now: Optional[datetime] = None) -> int:
        """Poller les transactions PENDING plus vieilles que le délai. Retourne le nombre finalisé."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=pending_timeout_seconds)
        stale = [record for record in self.store.list_pending(older_than=cutoff) if record.correlation_id]
        if not stale:
            return 0

        logger.info(f"🧹 Réconciliation périodique - {len(stale)} transaction(s) PENDING à vérifier")
        resolved = 0
        for record in stale:
            try:
                outcome = self.poll_and_resolve(record)
            except NotFoundError:
                continue
            except GatewayError as e:
                logger.warning(f"⚠️ Poll impossible pour {record.internal_reference}: {e}")
                continue
            if outcome.transitioned:
                resolved += 1

        logger.info(f"🧹 Réconciliation périodique terminée - {resolved} transaction(s) finalisée(s)")
        return resolved


async def run_periodic_sweep(reconciliation: ReconciliationService, interval_seconds: float, pending_timeout_seconds: float):
    """Tâche de fond lancée par le lifespan FastAPI"""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(reconciliation.sweep_stale_transactions, pending_timeout_seconds)
        except Exception:
            logger.exception("Erreur tâche de réconciliation périodique")
