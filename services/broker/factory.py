"""
Transport selection for the configured broker backend.
"""

from __future__ import annotations

from typing import Callable

from core.config_loader import BrokerConfig
from services.broker.amqp_transport import AmqpTransport
from services.broker.nats_transport import NatsTransport
from services.broker.topics import TopicSpace
from services.broker.transport import BrokerTransport
from shared.logging.logger import get_logger

log = get_logger("broker.factory")


def build_transport_factory(
    config: BrokerConfig, topics: TopicSpace
) -> Callable[[], BrokerTransport]:
    """
    Return a zero-argument factory producing one fresh session per call.
    """
    if config.backend == "amqp":
        queue_name = f"{topics.streamer}.control"
        log.info(f"Using AMQP broker (exchange={config.exchange}, queue={queue_name})")
        return lambda: AmqpTransport(
            config.amqp_url, exchange=config.exchange, queue_name=queue_name
        )

    log.info(f"Using NATS broker ({config.servers})")
    return lambda: NatsTransport(config.servers)
