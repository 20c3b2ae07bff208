# herald/services/publish_events.py
"""
Step/progress events emitted while a publish request runs.

A sink receives plain dict events::

    {"type": "step_started" | "step_completed" | "error",
     "platform": "email", "method": "smtp", "runId": "...",
     "step": "targets_resolved", "message": "...", "duration": 0.12,
     "timestamp": "2026-01-01T00:00:00"}
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis

from herald.config.settings import DeliveryConfig

logger = logging.getLogger(__name__)


class PublishEvents:
    """Base sink; subclasses implement ``emit``"""

    def __init__(self, platform: str = 'email', method: str = 'smtp'):
        self.platform = platform
        self.method = method

    def emit(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _event(self, kind: str, run_id: str, step: str, message: str,
               duration: Optional[float] = None) -> Dict[str, Any]:
        event = {
            'type': kind,
            'platform': self.platform,
            'method': self.method,
            'runId': run_id,
            'step': step,
            'message': message,
            'timestamp': datetime.utcnow().isoformat(),
        }
        if duration is not None:
            event['duration'] = round(duration, 3)
        return event

    def step_started(self, run_id: str, step: str, message: str = '') -> None:
        self.emit(self._event('step_started', run_id, step, message))

    def step_completed(self, run_id: str, step: str, message: str = '',
                       duration: Optional[float] = None) -> None:
        self.emit(self._event('step_completed', run_id, step, message, duration))

    def error(self, run_id: str, step: str, message: str) -> None:
        self.emit(self._event('error', run_id, step, message))


class LoggingPublishEvents(PublishEvents):
    """Write events to the module logger"""

    def emit(self, event: Dict[str, Any]) -> None:
        text = f"[{event['platform']}/{event['runId']}] {event['step']}: {event['message']}"
        if event['type'] == 'error':
            logger.error(text)
        else:
            logger.info(text)


class RedisPublishEvents(PublishEvents):
    """
    Publish events as JSON on ``<prefix>:<run id>`` for real-time UIs.

    A Redis outage never interrupts publishing; the event is dropped and a
    warning logged.
    """

    def __init__(self,
                 redis_client: Optional[redis.Redis] = None,
                 prefix: Optional[str] = None,
                 platform: str = 'email',
                 method: str = 'smtp'):
        super().__init__(platform, method)
        self.redis = redis_client or redis.Redis.from_url(DeliveryConfig.REDIS_EVENTS_URL, decode_responses=True)
        self.prefix = prefix or DeliveryConfig.EVENTS_CHANNEL_PREFIX

    def channel_for(self, run_id: str) -> str:
        return f"{self.prefix}:{run_id}"

    def emit(self, event: Dict[str, Any]) -> None:
        try:
            self.redis.publish(self.channel_for(event['runId']), json.dumps(event))
        except redis.RedisError as e:
            logger.warning(f"Failed to publish real-time update: {str(e)}")


class RecordingPublishEvents(PublishEvents):
    """Keep events in memory"""

    def __init__(self, platform: str = 'email', method: str = 'smtp'):
        super().__init__(platform, method)
        self.events: List[Dict[str, Any]] = []

    def emit(self, event: Dict[str, Any]) -> None:
        self.events.append(event)

    def steps(self, kind: Optional[str] = None) -> List[str]:
        return [e['step'] for e in self.events if kind is None or e['type'] == kind]
