"""Per-subscription queue of matched events waiting for the next digest."""
import logging
from datetime import datetime, timedelta
from typing import Optional

from event_digest.models import EmailQueueItem, Event, MatchType, utc_now
from event_digest.store import Store

logger = logging.getLogger(__name__)


class EmailQueue:
    """
    At most one unsent item exists per (subscription, event). Re-queuing a pair
    only raises its score, it never duplicates or lowers it.
    """

    def __init__(self, store: Store, retention_days: int = 30):
        self.store = store
        self.retention_days = retention_days

    def add_to_queue(
        self,
        subscription_id: str,
        event_id: str,
        match_score: float,
        match_type: MatchType,
        now: Optional[datetime] = None,
    ) -> EmailQueueItem:
        now = now or utc_now()
        existing = self.store.get_unsent_queue_item(subscription_id, event_id)
        if existing is not None:
            if match_score > existing.match_score:
                logger.info(
                    f"Raising queued score for {subscription_id}/{event_id}: "
                    f"{existing.match_score:.3f} -> {match_score:.3f}"
                )
                return self.store.patch_queue_item(
                    existing.id, match_score=match_score, match_type=match_type, queued_at=now
                )
            return existing

        item = EmailQueueItem(
            subscription_id=subscription_id,
            event_id=event_id,
            match_score=match_score,
            match_type=match_type,
            queued_at=now,
        )
        logger.info(f"Queued event {event_id} for subscription {subscription_id} ({match_type}, {match_score:.3f})")
        return self.store.insert_queue_item(item)

    def unsent_items(self, subscription_id: str) -> list[tuple[EmailQueueItem, Event]]:
        """Unsent items joined with their events, best score first. Items whose event is gone are skipped."""
        joined = []
        for item in self.store.list_queue_items(subscription_id=subscription_id, sent=False):
            event = self.store.get_event(item.event_id)
            if event is None:
                continue
            joined.append((item, event))
        joined.sort(key=lambda pair: (-pair[0].match_score, pair[1].event_date, pair[1].id))
        return joined

    def mark_sent(self, subscription_id: str, event_ids: list[str], now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        wanted = set(event_ids)
        marked = 0
        for item in self.store.list_queue_items(subscription_id=subscription_id, sent=False):
            if item.event_id in wanted:
                self.store.patch_queue_item(item.id, email_sent=True, email_sent_at=now)
                marked += 1
        return marked

    def delete_for_event(self, event_id: str) -> int:
        items = [item for item in self.store.list_queue_items() if item.event_id == event_id]
        for item in items:
            self.store.delete_queue_item(item.id)
        return len(items)

    def delete_for_subscription(self, subscription_id: str) -> int:
        items = self.store.list_queue_items(subscription_id=subscription_id)
        for item in items:
            self.store.delete_queue_item(item.id)
        return len(items)

    def cleanup_old_items(self, now: Optional[datetime] = None) -> int:
        """Delete items queued before the retention horizon, sent or not."""
        cutoff = (now or utc_now()) - timedelta(days=self.retention_days)
        old = [item for item in self.store.list_queue_items() if item.queued_at < cutoff]
        for item in old:
            self.store.delete_queue_item(item.id)
        if old:
            logger.info(f"Removed {len(old)} email queue items older than {self.retention_days} days")
        return len(old)

    def stats(self, subscription_id: Optional[str] = None) -> dict:
        items = self.store.list_queue_items(subscription_id=subscription_id)
        sent = sum(1 for item in items if item.email_sent)
        return {"total": len(items), "sent": sent, "unsent": len(items) - sent}
