"""Tests for client-side request/response correlation."""

import threading
import time

import pytest

from shellctl.correlator import Correlator, ReplyTimeoutError
from shellproto.crypto import seal
from shellproto.errors import PublishError
from shellproto.protocol import Command, Response


@pytest.fixture
def correlator(client_config, transport):
    correlator = Correlator(client_config, transport)
    correlator.start()
    return correlator


def sealed_response(cipher, **kwargs):
    kwargs.setdefault("success", True)
    kwargs.setdefault("message", "Command executed successfully")
    return cipher.seal(Response(**kwargs).to_json())


class TestSend:

    def test_publishes_sealed_command(self, correlator, transport, cipher, client_config):
        correlator.send(["uname", "-a"])

        topic, payload = transport.published[0]
        assert topic == client_config.topics.command
        cmd = Command.from_json(cipher.open(payload))
        assert cmd.argv == ["uname", "-a"]
        assert cmd.action == "exec"

    def test_publish_error_propagates(self, correlator, transport):
        transport.fail_publish = PublishError("not connected")
        with pytest.raises(PublishError):
            correlator.send(["ls"])


class TestAwaitReply:

    def test_reply_delivered(self, correlator, transport, cipher, client_config):
        transport.deliver(
            client_config.topics.response,
            sealed_response(cipher, data={"command": "ls", "output": "a\n"}),
        )
        resp = correlator.await_reply(timeout=1)
        assert resp.success is True
        assert resp.output == "a\n"

    def test_reply_from_another_thread_wakes_waiter(self, correlator, transport, cipher, client_config):
        def reply_later():
            time.sleep(0.1)
            transport.deliver(client_config.topics.response, sealed_response(cipher))

        threading.Thread(target=reply_later).start()
        resp = correlator.await_reply(timeout=5)
        assert resp.message == "Command executed successfully"

    def test_request_round_trip(self, correlator, transport, cipher, client_config):
        def answer(topic, payload):
            if topic == client_config.topics.command:
                cmd = Command.from_json(cipher.open(payload))
                reply = sealed_response(cipher, data={"command": cmd.command_line(), "output": ""})
                threading.Thread(
                    target=transport.deliver,
                    args=(client_config.topics.response, reply),
                ).start()

        transport.on_publish = answer
        resp = correlator.request(["whoami"], timeout=5)
        assert resp.command == "whoami"

    def test_timeout_not_before_deadline(self, correlator):
        started = time.monotonic()
        with pytest.raises(ReplyTimeoutError) as exc_info:
            correlator.await_reply(timeout=0.3)
        elapsed = time.monotonic() - started
        assert elapsed >= 0.29
        assert exc_info.value.timeout == 0.3
        assert "offline" in str(exc_info.value)
        assert isinstance(exc_info.value, TimeoutError)

    def test_default_timeout_from_config(self, correlator):
        started = time.monotonic()
        with pytest.raises(ReplyTimeoutError):
            correlator.await_reply()
        assert time.monotonic() - started >= 0.99


class TestReceivePath:

    def test_undecryptable_reply_dropped(self, correlator, transport, client_config):
        transport.deliver(client_config.topics.response, b"garbage!!")
        transport.deliver(client_config.topics.response, seal(b"{}", "other key"))
        with pytest.raises(ReplyTimeoutError):
            correlator.await_reply(timeout=0.1)

    def test_unparseable_reply_dropped(self, correlator, transport, cipher, client_config):
        transport.deliver(client_config.topics.response, cipher.seal(b"[not a response]"))
        with pytest.raises(ReplyTimeoutError):
            correlator.await_reply(timeout=0.1)

    def test_full_queue_drops_without_blocking(self, client_config, transport, cipher):
        correlator = Correlator(client_config, transport, queue_size=1)
        correlator.start()
        transport.deliver(client_config.topics.response, sealed_response(cipher, message="first"))
        transport.deliver(client_config.topics.response, sealed_response(cipher, message="second"))

        assert correlator.await_reply(timeout=1).message == "first"
        with pytest.raises(ReplyTimeoutError):
            correlator.await_reply(timeout=0.1)

    def test_replies_taken_in_arrival_order(self, correlator, transport, cipher, client_config):
        for message in ("one", "two"):
            transport.deliver(client_config.topics.response, sealed_response(cipher, message=message))
        assert correlator.await_reply(timeout=1).message == "one"
        assert correlator.await_reply(timeout=1).message == "two"
