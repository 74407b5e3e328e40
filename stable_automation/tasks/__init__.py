from .background import *
from .cron import *

__all__ = [
    "process_notification_queue_item_task",
    # Scheduled/Cron Tasks
    "materialize_activity_instances_task",
    "dispatch_due_queue_items_task",
    "retry_failed_deliveries_task",
    "cleanup_old_notifications_task",
]
