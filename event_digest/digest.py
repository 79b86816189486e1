"""
Digest emails: one message per due subscription bundling every unsent match.

The recurring sweep picks active subscriptions whose next send time has
passed, renders their queue, sends it, marks the items sent and pushes the
next send time out by the subscription's frequency.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from jinja2 import BaseLoader, Environment
from pydantic import BaseModel

from event_digest.config import EmailConfig
from event_digest.email_queue import EmailQueue
from event_digest.errors import PipelineError
from event_digest.mailer import Mailer
from event_digest.models import (
    AllEventsSubscription,
    EmailQueueItem,
    Event,
    PromptSubscription,
    utc_now,
)
from event_digest.store import Store

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 200


class EmailContent(BaseModel):
    subject: str
    html: str


class EmailSendResult(BaseModel):
    success: bool
    message: str
    events_sent: int = 0


class DigestSweepResult(BaseModel):
    checked: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


def score_color(score: float) -> str:
    if score >= 0.8:
        return "#10b981"
    if score >= 0.6:
        return "#f59e0b"
    if score >= 0.4:
        return "#f97316"
    return "#ef4444"


def score_label(score: float) -> str:
    if score >= 0.8:
        return "Excellent match"
    if score >= 0.6:
        return "Good match"
    if score >= 0.4:
        return "Fair match"
    return "Poor match"


def truncate_text(text: str, max_length: int = MAX_DESCRIPTION_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length].rstrip() + "..."


def plural(count: int, word: str = "event") -> str:
    return f"{count} {word}{'s' if count != 1 else ''}"


DIGEST_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>New Events for You</title>
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #374151; background-color: #f9fafb; margin: 0; padding: 20px;">
  <div style="max-width: 600px; margin: 0 auto; background-color: #ffffff; border-radius: 8px; overflow: hidden;">
    <div style="background: #667eea; padding: 30px; text-align: center;">
      <h1 style="margin: 0; color: white; font-size: 24px;">New Events Found!</h1>
      <p style="margin: 10px 0 0 0; color: #eef; font-size: 16px;">
        We found {{ total_label }} matching your subscription
      </p>
    </div>

    <div style="padding: 30px;">
      <div style="margin-bottom: 25px; padding: 15px; background-color: #f3f4f6; border-left: 4px solid #3b82f6;">
        <h2 style="margin: 0 0 10px 0; font-size: 18px;">Your Subscription</h2>
        <p style="margin: 0; color: #6b7280; font-size: 14px;">
          {% if prompt %}Prompt: "{{ prompt }}"{% else %}All events{% endif %}
        </p>
      </div>

      {% for item in items %}
      <div style="margin-bottom: 20px; padding: 15px; border: 1px solid #e5e7eb; border-radius: 8px;">
        <h3 style="margin: 0 0 10px 0; font-size: 18px;">
          <a href="{{ item.url }}" style="color: #3b82f6; text-decoration: none;">{{ item.title }}</a>
        </h3>
        <p style="margin: 0 0 10px 0; color: #6b7280; font-size: 14px;">{{ item.date }}</p>
        <p style="margin: 0 0 10px 0; line-height: 1.5;">{{ item.description }}</p>
        <span style="background-color: {{ item.color }}; color: white; padding: 4px 8px; border-radius: 4px; font-size: 12px;">
          {{ item.label }} ({{ item.percent }}%)
        </span>
        <a href="{{ item.url }}" style="margin-left: 12px; color: #3b82f6; font-size: 14px;">View Event</a>
      </div>
      {% endfor %}

      {% if overflow %}
      <div style="text-align: center; margin-top: 20px; padding: 15px; background-color: #f3f4f6; border-radius: 6px;">
        <p style="margin: 0; color: #6b7280; font-size: 14px;">And {{ overflow_label }}...</p>
      </div>
      {% endif %}

      <div style="margin-top: 30px; padding-top: 20px; border-top: 1px solid #e5e7eb; text-align: center;">
        <p style="margin: 0 0 15px 0; color: #6b7280; font-size: 14px;">
          You're receiving this email because you're subscribed to event notifications.
        </p>
        <a href="{{ site_url }}" style="background-color: #10b981; color: white; padding: 10px 20px; text-decoration: none; border-radius: 6px;">
          Manage Subscriptions
        </a>
      </div>
    </div>
  </div>
</body>
</html>"""

_env = Environment(loader=BaseLoader(), autoescape=True)
_template = _env.from_string(DIGEST_TEMPLATE)


def digest_subject(subscription: Union[PromptSubscription, AllEventsSubscription], count: int) -> str:
    if isinstance(subscription, PromptSubscription):
        return f'{plural(count, "new event")} matching "{subscription.prompt}"'
    return f"{plural(count, 'new event')} for you"


def render_digest(
    subscription: Union[PromptSubscription, AllEventsSubscription],
    queued: list[tuple[EmailQueueItem, Event]],
    config: EmailConfig,
) -> EmailContent:
    """Render the digest for a subscription. Only the first max_events_per_email entries are listed."""
    shown = queued[:config.max_events_per_email]
    overflow = len(queued) - len(shown)

    items = [
        {
            "title": event.title,
            "url": event.url,
            "date": event.event_date.strftime("%A, %B %d, %Y %H:%M UTC"),
            "description": truncate_text(event.description or ""),
            "color": score_color(item.match_score),
            "label": score_label(item.match_score),
            "percent": round(item.match_score * 100),
        }
        for item, event in shown
    ]
    html = _template.render(
        total_label=plural(len(queued), "new event"),
        prompt=subscription.prompt if isinstance(subscription, PromptSubscription) else None,
        items=items,
        overflow=overflow,
        overflow_label=plural(overflow, "more event"),
        site_url=config.site_url,
    )
    return EmailContent(subject=digest_subject(subscription, len(queued)), html=html)


class DigestScheduler:
    def __init__(
        self,
        store: Store,
        queue: EmailQueue,
        mailer: Mailer,
        config: EmailConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.mailer = mailer
        self.config = config
        self.clock = clock

    def due_subscriptions(self, now: datetime) -> list[Union[PromptSubscription, AllEventsSubscription]]:
        return [
            sub for sub in self.store.list_subscriptions()
            if sub.is_active and sub.next_email_scheduled <= now
        ]

    async def send_due_digests(self, now: Optional[datetime] = None) -> DigestSweepResult:
        """Recurring sweep: send one digest per due subscription that has unsent matches."""
        now = now or self.clock()
        result = DigestSweepResult()
        for subscription in self.due_subscriptions(now):
            result.checked += 1
            if not self.queue.unsent_items(subscription.id):
                result.skipped += 1
                continue
            outcome = await self.send_subscription_digest(subscription.id, now=now)
            if outcome.success:
                result.sent += 1
            else:
                result.failed += 1
        logger.info(
            f"Digest sweep: {result.checked} due, {result.sent} sent, "
            f"{result.skipped} with nothing queued, {result.failed} failed"
        )
        return result

    async def send_subscription_digest(self, subscription_id: str, now: Optional[datetime] = None) -> EmailSendResult:
        now = now or self.clock()
        subscription = self.store.get_subscription(subscription_id)
        if subscription is None:
            return EmailSendResult(success=False, message=f"Subscription {subscription_id} not found")
        user = self.store.get_user(subscription.user_id)
        if user is None or not user.email:
            return EmailSendResult(success=False, message=f"No email address for user {subscription.user_id}")

        queued = self.queue.unsent_items(subscription_id)
        if not queued:
            return EmailSendResult(success=False, message="No events in queue to send")

        content = render_digest(subscription, queued, self.config)
        try:
            await self.mailer.send(user.email, content.subject, content.html)
        except PipelineError as e:
            logger.error(f"Digest for subscription {subscription_id} failed: {e}")
            return EmailSendResult(success=False, message=f"Failed to send email to {user.email}: {e}")

        self.queue.mark_sent(subscription_id, [event.id for _, event in queued], now=now)
        self.store.patch_subscription(
            subscription_id,
            last_email_sent=now,
            next_email_scheduled=now + timedelta(hours=subscription.email_frequency_hours),
        )
        return EmailSendResult(
            success=True,
            message=f"Email sent successfully to {user.email}",
            events_sent=len(queued),
        )

    def cleanup_email_queue(self, now: Optional[datetime] = None) -> int:
        return self.queue.cleanup_old_items(now or self.clock())
