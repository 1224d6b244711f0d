"""Pytest fixtures for MQTT Shell tests.

Provides shared fixtures for testing:
- A passphrase and validated configuration
- An in-memory transport that records publishes and lets tests deliver
  payloads to subscribers
"""

import threading

import pytest

from shellproto.config import ROLE_CLIENT, ROLE_SERVER, ShellConfig
from shellproto.crypto import EnvelopeCipher


class FakeTransport:
    """Stands in for MQTTTransport."""

    def __init__(self):
        self.handlers = {}
        self.published = []
        self.fail_publish = None
        self.on_publish = None
        self._lock = threading.Lock()

    def subscribe(self, topic, handler, qos=1):
        self.handlers[topic] = handler

    def publish(self, topic, payload, qos=1):
        if self.fail_publish:
            raise self.fail_publish
        with self._lock:
            self.published.append((topic, payload))
        if self.on_publish:
            self.on_publish(topic, payload)

    def deliver(self, topic, payload):
        self.handlers[topic](payload)


@pytest.fixture
def passphrase():
    return "correct horse battery staple"


@pytest.fixture
def cipher(passphrase):
    return EnvelopeCipher(passphrase)


@pytest.fixture
def server_config(passphrase):
    config = ShellConfig(
        role=ROLE_SERVER,
        client_id="test-server",
        topic_prefix="test-shell",
        exec_key=passphrase,
        exec_timeout=5.0,
    )
    config.validate()
    return config


@pytest.fixture
def client_config(passphrase):
    config = ShellConfig(
        role=ROLE_CLIENT,
        client_id="test-client",
        topic_prefix="test-shell",
        exec_key=passphrase,
        response_timeout=1.0,
    )
    config.validate()
    return config


@pytest.fixture
def transport():
    return FakeTransport()
