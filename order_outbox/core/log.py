import logging

from order_outbox.core.config import LOG_LEVEL

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = LOG_LEVEL):
    """Sets up root logging once per process (API, dispatcher or consumer)."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    # Tortoise is chatty at DEBUG, keep it at INFO like the rest of the service
    logging.getLogger('tortoise').setLevel(logging.INFO)
    logging.getLogger('aio_pika').setLevel(logging.WARNING)
    logging.getLogger('aiormq').setLevel(logging.WARNING)
