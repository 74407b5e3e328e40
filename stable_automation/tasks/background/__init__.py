from .notification_queue_processor import process_notification_queue_item_task

__all__ = [
    "process_notification_queue_item_task",
]
