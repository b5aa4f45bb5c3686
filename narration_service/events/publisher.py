from __future__ import annotations

import json
import logging
from typing import Any

try:  # pragma: no cover - optional dependency
    from kafka import KafkaProducer
except ImportError:  # pragma: no cover - fallback when kafka-python absent
    KafkaProducer = None  # type: ignore

from narration_service.models.domain import utcnow


class BillingEventPublisher:
    """Publishes settle-up outcomes to Kafka for out-of-band reconciliation."""

    def __init__(self, bootstrap_servers: str, topic: str, logger: logging.Logger | None = None) -> None:
        if KafkaProducer is None:
            raise RuntimeError("kafka-python is not installed")
        if not bootstrap_servers:
            raise ValueError("bootstrap_servers is required")
        if not topic:
            raise ValueError("topic is required")
        self._topic = topic
        self._logger = logger or logging.getLogger(__name__)
        self._producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            value_serializer=lambda payload: json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            key_serializer=lambda key: key.encode("utf-8"),
            linger_ms=5,
        )

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        message = {"event": event, "emitted_at": utcnow().isoformat(), **payload}
        key = str(payload.get("user_id") or event)
        try:
            self._producer.send(self._topic, message, key=key)
        except Exception:
            self._logger.warning(
                "failed to publish billing event",
                extra={"event": event, "topic": self._topic},
                exc_info=True,
            )

    def close(self) -> None:
        try:
            self._producer.flush()
            self._producer.close()
        except Exception:
            self._logger.debug("billing event publisher close failed", exc_info=True)
