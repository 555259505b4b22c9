import json

from services.broker.topics import Topic, TopicSpace
from services.broker.transport import ControlMessage, encode_payload


class TestTopicSpace:
    def test_subjects(self):
        topics = TopicSpace(control="ctl", streamer="grafana")
        assert topics.control_wildcard == "ctl.>"
        assert topics.streamer_ping == "grafana.ping"
        assert topics.streamer_connected == "grafana.connected"
        assert topics.control_subject(Topic.EVAL) == "ctl.eval"

    def test_resolve(self):
        topics = TopicSpace()
        assert topics.resolve("control.restart") == "restart"
        assert topics.resolve("control.proxy-socket") == "proxy-socket"
        assert topics.resolve("streamer.ping") is None


class TestPayloads:
    def test_encode(self):
        assert encode_payload(None) == b""
        assert encode_payload(b"raw") == b"raw"
        assert json.loads(encode_payload({"pong": True})) == {"pong": True}

    def test_decode(self):
        assert ControlMessage("t", b'{"id": "1"}').data() == {"id": "1"}
        assert ControlMessage("t", b"plain text").data() == "plain text"
        assert ControlMessage("t", b"").data() is None
