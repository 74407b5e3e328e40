from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
broker_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
result_backend = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# Task Discovery
include = ["stable_automation.tasks"]

# Timezone Configuration
timezone = settings.TIMEZONE
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 30 * 60  # 30 minutes
task_soft_time_limit = 25 * 60  # 25 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Task Retry Configuration
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = 60  # 60 seconds
task_max_retries = 3

# Exponential Backoff Settings
task_retry_backoff = True
task_retry_backoff_max = 700  # Max 700 seconds
task_retry_jitter = False

# Per-item delivery work must not hold a worker for long
task_annotations = {
    "stable_automation.tasks.background.notification_queue_processor.process_notification_queue_item_task": {
        "time_limit": 120,
        "soft_time_limit": 90,
    },
}

# All scheduled tasks use Europe/Stockholm timezone
beat_schedule = {
    # Recurring activity materialization - Every day at 02:00
    "daily-activity-instance-materializer": {
        "task": "stable_automation.tasks.cron.activity_instance_materializer.materialize_activity_instances_task",
        "schedule": crontab(hour=2, minute=0),
        "args": ("daily_activity_instance_materializer_cron",),
    },
    # Failed delivery retry sweep - Every hour on the hour
    "hourly-failed-delivery-retry": {
        "task": "stable_automation.tasks.cron.failed_delivery_retry.retry_failed_deliveries_task",
        "schedule": crontab(minute=0),
        "args": ("hourly_failed_delivery_retry_cron",),
    },
    # Queue and notification cleanup - Every day at 03:30
    "daily-notification-cleanup": {
        "task": "stable_automation.tasks.cron.notification_cleanup.cleanup_old_notifications_task",
        "schedule": crontab(hour=3, minute=30),
        "args": ("daily_notification_cleanup_cron",),
    },
    # Pick up deferred queue items whose schedule has elapsed - Every 5 minutes
    "due-notification-queue-dispatcher": {
        "task": "stable_automation.tasks.cron.due_queue_dispatcher.dispatch_due_queue_items_task",
        "schedule": crontab(minute="*/5"),
        "args": ("due_notification_queue_dispatcher_cron",),
    },
}

# Default Queue
task_default_queue = "stable_automation"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
