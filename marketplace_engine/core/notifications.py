import structlog
from typing import Any, Dict, Optional

import requests

from marketplace_engine import config
from marketplace_engine.models.ledger import PayoutBatch, SaleRecord

logger = structlog.get_logger()


class NotificationDispatcher:
    """
    Fire-and-forget ledger events for the email/notification services.

    Events are always logged. When a webhook URL is configured they are also
    POSTed as JSON; delivery failures are logged and never reach the ledger,
    which has already committed by the time an event is dispatched.
    """

    def __init__(self, webhook_url: Optional[str] = None, session: Optional[requests.Session] = None, timeout: float = 5.0):
        self.webhook_url = webhook_url if webhook_url is not None else config.NOTIFICATION_WEBHOOK_URL
        self.session = session or requests.Session()
        self.timeout = timeout

    def on_sale_recorded(self, record: SaleRecord) -> None:
        self._dispatch("sale_recorded", record.model_dump(mode="json"))

    def on_payout_batch_created(self, batch: PayoutBatch) -> None:
        self._dispatch("payout_batch_created", batch.model_dump(mode="json"))

    def _dispatch(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info("Dispatching notification", notification_event=event, entity_id=payload.get("id"))
        if not self.webhook_url:
            return
        try:
            response = self.session.post(
                self.webhook_url,
                json={"event": event, "data": payload},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning("Notification delivery failed",
                           notification_event=event, entity_id=payload.get("id"), error=str(e))
