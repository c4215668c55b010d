"""Best-effort retrieval of the Robokassa operation key (OpKey).

The OpKey is only needed later, for refunds, so nothing here may fail or
stall a settlement: the lookup is bounded by asyncio.wait_for, every error
is logged and turned into None, and persisting the key is a separate
best-effort write.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from waxhands_api.billing.robokassa import RobokassaClient
from waxhands_api.db.repo_invoices import InvoiceRepository

logger = logging.getLogger(__name__)


class OperationKeyEnricher:
    """Fetches and stores the OpKey of a freshly settled invoice."""

    def __init__(self, client: RobokassaClient, timeout: float):
        self.client = client
        self.timeout = timeout

    async def fetch_operation_key(self, inv_id: str) -> Optional[str]:
        """Return the OpKey for a Robokassa InvId, or None.

        Never raises. Non-numeric ids are skipped without a network call,
        since OpStateExt only knows Robokassa's numeric InvId.
        """
        if not inv_id.isdigit():
            logger.info(
                "OPKEY_LOOKUP_SKIPPED",
                extra={"inv_id": inv_id, "reason": "non_numeric_inv_id"},
            )
            return None

        try:
            state = await asyncio.wait_for(
                self.client.get_operation_state(inv_id), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "OPKEY_LOOKUP_TIMEOUT",
                extra={"inv_id": inv_id, "timeout_seconds": self.timeout},
            )
            return None
        except Exception as e:
            logger.warning(
                "OPKEY_LOOKUP_FAILED",
                extra={
                    "inv_id": inv_id,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            return None

        if not state.op_key:
            logger.info("OPKEY_NOT_AVAILABLE", extra={"inv_id": inv_id, "state_code": state.state_code})
            return None
        return state.op_key

    def store_operation_key(self, db: Session, invoice_id: str, op_key: str) -> bool:
        """Persist the OpKey; failures are logged and reported as False."""
        try:
            stored = InvoiceRepository(db).set_operation_key(invoice_id, op_key)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(
                "OPKEY_STORE_FAILED",
                extra={"error_type": type(e).__name__},
            )
            return False

        if stored:
            logger.info("OPKEY_STORED")
        return stored

    async def enrich(self, db: Session, invoice_id: str, inv_id: str) -> Optional[str]:
        """Fetch the OpKey for inv_id and store it on the invoice.

        Args:
            db: Session of the current request
            invoice_id: Internal invoice id
            inv_id: Robokassa InvId used for the lookup

        Returns:
            The OpKey if one was obtained, else None
        """
        op_key = await self.fetch_operation_key(inv_id)
        if op_key is None:
            return None
        self.store_operation_key(db, invoice_id, op_key)
        return op_key
