from core.config_loader import BrokerConfig
from services.broker.amqp_transport import AmqpTransport
from services.broker.factory import build_transport_factory
from services.broker.nats_transport import NatsTransport
from services.broker.topics import TopicSpace


class TestTransportFactory:
    def test_nats_is_default(self):
        factory = build_transport_factory(
            BrokerConfig(servers="nats://a:4222, nats://b:4222"), TopicSpace()
        )

        first, second = factory(), factory()

        assert isinstance(first, NatsTransport)
        assert first is not second
        assert first._servers == ["nats://a:4222", "nats://b:4222"]

    def test_amqp_queue_follows_streamer_namespace(self):
        config = BrokerConfig(backend="amqp", exchange="ops")
        factory = build_transport_factory(config, TopicSpace(streamer="grafana"))

        transport = factory()

        assert isinstance(transport, AmqpTransport)
        assert transport._queue_name == "grafana.control"
        assert transport._exchange_name == "ops"
