from celery import Celery
from celery.signals import setup_logging

from stable_automation.utils.logging import configure_logging

# Create Celery app
celery = Celery("stable_automation")

# Load configuration from stable_automation.config.celeryconfig module
celery.config_from_object("stable_automation.config.celeryconfig")


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    # Connecting this signal stops Celery from installing its own handlers
    configure_logging()
