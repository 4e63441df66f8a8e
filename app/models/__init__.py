from app.models.event_subscription import EventSubscription  # noqa: F401
from app.models.event_webhook import EventWebhook  # noqa: F401
from app.models.queue_message import QueueMessageStatus, QueuedMessage  # noqa: F401
