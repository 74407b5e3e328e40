from .activity_instance_materializer import materialize_activity_instances_task
from .due_queue_dispatcher import dispatch_due_queue_items_task
from .failed_delivery_retry import retry_failed_deliveries_task
from .notification_cleanup import cleanup_old_notifications_task

__all__ = [
    "materialize_activity_instances_task",
    "dispatch_due_queue_items_task",
    "retry_failed_deliveries_task",
    "cleanup_old_notifications_task",
]
