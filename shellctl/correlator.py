"""
Request/response correlation for the MQTT Shell controller.

The transport delivers replies on its own thread; the interactive loop
blocks on a bounded queue until one shows up or the wait times out.

Commands carry no identifier, so only one may be in flight at a time:
send(), then await_reply(), then the next send(). A reply that arrives
after its wait timed out is handed to the next waiter.
"""

import logging
import queue
from typing import List, Optional

from shellproto.config import ShellConfig
from shellproto.crypto import EnvelopeCipher
from shellproto.errors import DecryptionError, ProtocolError
from shellproto.protocol import ACTION_EXEC, Command, Response, Topics

log = logging.getLogger(__name__)

REPLY_QUEUE_SIZE = 10


class ReplyTimeoutError(TimeoutError):
    """No reply arrived before the wait expired."""

    def __init__(self, timeout: float):
        super().__init__(f"no response within {timeout:g}s - server may be offline")
        self.timeout = timeout


class Correlator:
    """Sends sealed commands and hands decrypted replies to the caller."""

    def __init__(
        self,
        config: ShellConfig,
        transport,
        cipher: Optional[EnvelopeCipher] = None,
        queue_size: int = REPLY_QUEUE_SIZE,
    ):
        self.config = config
        self.transport = transport
        self.topics: Topics = config.topics
        self.cipher = cipher or EnvelopeCipher(config.exec_key)
        self.replies: "queue.Queue[Response]" = queue.Queue(maxsize=queue_size)

    def start(self) -> None:
        """Subscribe to the response topic."""
        self.transport.subscribe(self.topics.response, self.on_message)

    def send(self, argv: List[str]) -> None:
        """
        Seal a command and publish it on the command topic.

        Raises EncryptionError or PublishError; returns once the transport
        has completed the publish.
        """
        command = Command(argv=list(argv), action=ACTION_EXEC)
        encrypted = self.cipher.seal(command.to_json())
        self.transport.publish(self.topics.command, encrypted)
        log.debug(f"Sent command: {command.command_line()}")

    def await_reply(self, timeout: Optional[float] = None) -> Response:
        """Block until a reply is available or timeout seconds pass."""
        if timeout is None:
            timeout = self.config.response_timeout
        try:
            return self.replies.get(timeout=timeout)
        except queue.Empty:
            raise ReplyTimeoutError(timeout) from None

    def request(self, argv: List[str], timeout: Optional[float] = None) -> Response:
        """send() followed by await_reply()."""
        self.send(argv)
        return self.await_reply(timeout)

    def on_message(self, payload: bytes) -> None:
        """Transport callback: decrypt, parse and queue one reply."""
        try:
            plaintext = self.cipher.open(payload)
        except DecryptionError as e:
            log.warning(f"Failed to decrypt response: {e}")
            return

        try:
            response = Response.from_json(plaintext)
        except ProtocolError as e:
            log.warning(f"Failed to parse response: {e}")
            return

        try:
            self.replies.put_nowait(response)
        except queue.Full:
            log.warning("Reply queue full, dropping response")
