"""
Kafka/Redpanda change bus.

Notices are small JSON messages keyed by the origin member, so notices from
one member stay ordered within a partition.

Invariants:
    - Producer uses acks=all
    - Every member consumes with its own consumer group, so each member sees
      every notice
    - Consumers start from the latest offset; a member that was down reloads
      the full snapshot on startup instead of replaying notices

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Keep the message format readable by ChangeNotice.from_bytes
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError

from .base import (
    ChangeBusConnectionError,
    ChangeBusError,
    ChangeNotice,
    NoticeSerializationError,
)

if TYPE_CHECKING:
    from ..config import ClusterConfig

logger = logging.getLogger(__name__)


class KafkaChangeBus:
    """Kafka implementation of the ChangeBus protocol.

    Example:
        >>> bus = KafkaChangeBus(ClusterConfig(kafka_brokers="localhost:9092"))
        >>> await bus.connect()
        >>> await bus.publish(ChangeNotice(origin="node-1", revision=3))
    """

    def __init__(self, config: ClusterConfig) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumers: list[AIOKafkaConsumer] = []
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            ChangeBusConnectionError: If connection fails
        """
        if self._connected:
            return
        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.kafka_brokers,
                acks="all",
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
            )
            await self._producer.start()
            self._connected = True
            logger.info(
                "Connected to Kafka change bus",
                extra={"brokers": self.config.kafka_brokers, "topic": self.config.topic},
            )
        except Exception as e:
            self._connected = False
            self._producer = None
            raise ChangeBusConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        for consumer in self._consumers:
            try:
                await consumer.stop()
            except Exception as e:
                logger.warning(f"Error closing consumer: {e}")
        self._consumers.clear()

        if self._producer:
            try:
                await self._producer.stop()
            except Exception as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka change bus closed")

    async def publish(self, notice: ChangeNotice) -> None:
        if not self._producer:
            raise ChangeBusConnectionError("Not connected to Kafka")
        try:
            await self._producer.send_and_wait(
                self.config.topic,
                value=notice.to_bytes(),
                key=notice.origin.encode("utf-8"),
            )
        except KafkaConnectionError as e:
            self._connected = False
            raise ChangeBusConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise ChangeBusError(f"Kafka send failed: {e}") from e

        logger.debug(
            "Change notice published",
            extra={"origin": notice.origin, "revision": notice.revision},
        )

    async def subscribe(self, member_id: str) -> AsyncIterator[ChangeNotice]:
        consumer = AIOKafkaConsumer(
            self.config.topic,
            bootstrap_servers=self.config.kafka_brokers,
            group_id=f"strata-config-{member_id}",
            auto_offset_reset="latest",
            enable_auto_commit=True,
        )
        try:
            await consumer.start()
        except KafkaError as e:
            raise ChangeBusConnectionError(f"Failed to subscribe: {e}") from e

        self._consumers.append(consumer)
        logger.info(
            "Subscribed to change bus",
            extra={"topic": self.config.topic, "member_id": member_id},
        )

        try:
            async for msg in consumer:
                try:
                    yield ChangeNotice.from_bytes(msg.value)
                except NoticeSerializationError as e:
                    logger.warning(
                        "Skipping malformed change notice",
                        extra={"partition": msg.partition, "offset": msg.offset, "error": str(e)},
                    )
        except KafkaError as e:
            raise ChangeBusError(f"Consumer error: {e}") from e
        finally:
            if consumer in self._consumers:
                self._consumers.remove(consumer)
                await consumer.stop()
