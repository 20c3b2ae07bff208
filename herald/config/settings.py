# herald/config/settings.py
"""
Delivery Configuration for the announcement pipeline
"""

import os
import logging
from pathlib import Path
from typing import List, Optional


class DeliveryConfig:
    """Delivery configuration settings"""

    # Allow-listed storage roots for attachment content
    EVENT_STORAGE_ROOT = os.environ.get('HERALD_EVENT_STORAGE_ROOT', 'events')
    UPLOAD_TEMP_ROOT = os.environ.get('HERALD_UPLOAD_TEMP_ROOT', os.path.join('temp', 'uploads'))

    # Relative file paths are resolved against this directory
    FILE_BASE_DIR = os.environ.get('HERALD_FILE_BASE_DIR') or os.getcwd()

    # Persisted targets/groups (one sub-directory per channel)
    TARGET_DATA_ROOT = os.environ.get('HERALD_TARGET_DATA_ROOT', os.path.join('data', 'platforms'))
    TARGET_DATA_FILENAME = 'targets.json'

    # Transport timeouts
    SEND_TIMEOUT_SECONDS = float(os.environ.get('HERALD_SEND_TIMEOUT', '30'))
    SMTP_CONNECT_TIMEOUT_SECONDS = float(os.environ.get('HERALD_SMTP_CONNECT_TIMEOUT', '10'))

    # Celery
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
    CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')

    # Real-time publish events
    REDIS_EVENTS_URL = os.environ.get('HERALD_REDIS_EVENTS_URL', 'redis://localhost:6379/1')
    EVENTS_CHANNEL_PREFIX = os.environ.get('HERALD_EVENTS_CHANNEL_PREFIX', 'publish')

    # Logging
    LOG_LEVEL = os.environ.get('HERALD_LOG_LEVEL', 'INFO')
    LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    @classmethod
    def allowed_roots(cls) -> List[Path]:
        """Canonical absolute paths of the allow-listed storage roots"""
        roots = []
        for root in (cls.EVENT_STORAGE_ROOT, cls.UPLOAD_TEMP_ROOT):
            path = Path(root)
            if not path.is_absolute():
                path = Path(cls.FILE_BASE_DIR) / path
            roots.append(Path(os.path.realpath(path)))
        return roots

    @classmethod
    def target_data_root(cls) -> Path:
        path = Path(cls.TARGET_DATA_ROOT)
        if not path.is_absolute():
            path = Path(cls.FILE_BASE_DIR) / path
        return path


def configure_logging(level: Optional[str] = None) -> None:
    """Configure stream logging for workers and command-line use"""
    logging.basicConfig(
        level=getattr(logging, (level or DeliveryConfig.LOG_LEVEL).upper(), logging.INFO),
        format=DeliveryConfig.LOG_FORMAT,
        handlers=[logging.StreamHandler()]
    )
