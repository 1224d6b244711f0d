#!/usr/bin/env python3
"""
MQTT Shell Agent (command server)

Responsibilities:
- Subscribe to the encrypted command topic
- Decrypt, parse and validate each command
- Execute it with a bounded run time
- Publish exactly one encrypted response per received message

Nothing a single malformed or hostile message does may stop the process;
only configuration and the initial broker connection are fatal.
"""

import argparse
import logging
import signal
import sys
import threading
from typing import Optional

from shellproto import __version__
from shellproto.config import ROLE_SERVER, ShellConfig
from shellproto.crypto import EnvelopeCipher
from shellproto.errors import (
    BrokerConnectionError,
    ConfigurationError,
    DecryptionError,
    EncryptionError,
    ProtocolError,
    PublishError,
    ValidationError,
)
from shellproto.protocol import (
    ACTION_EXEC,
    DATA_COMMAND,
    DATA_ERROR,
    DATA_OUTPUT,
    Command,
    Response,
    Topics,
    failure,
    success,
)
from shellproto.transport import MQTTTransport

from .executor import CommandExecutor

log = logging.getLogger(__name__)

MSG_DECRYPTION_FAILED = "Decryption failed"
MSG_INVALID_FORMAT = "Invalid command format"
MSG_NO_COMMAND = "No command specified"
MSG_EXEC_FAILED = "Command execution failed"
MSG_EXEC_OK = "Command executed successfully"


class ShellAgent:
    """Turns encrypted command payloads into encrypted responses."""

    def __init__(
        self,
        config: ShellConfig,
        transport,
        executor: Optional[CommandExecutor] = None,
        cipher: Optional[EnvelopeCipher] = None,
    ):
        """Initialize agent.

        Args:
            config: Validated configuration
            transport: Object with subscribe(topic, handler) and
                publish(topic, payload)
            executor: Command executor (defaults to config.exec_timeout)
            cipher: Envelope cipher (defaults to one keyed by config.exec_key)
        """
        self.config = config
        self.transport = transport
        self.topics: Topics = config.topics
        self.cipher = cipher or EnvelopeCipher(config.exec_key)
        self.executor = executor or CommandExecutor(timeout=config.exec_timeout)

    def start(self) -> None:
        """Subscribe to the command topic."""
        self.transport.subscribe(self.topics.command, self.on_message)
        log.info(f"Listening on: {self.topics.command}")

    def on_message(self, payload: bytes) -> None:
        """Transport callback; each message gets its own thread."""
        threading.Thread(
            target=self.handle_message,
            args=(payload,),
            name="shell-command",
            daemon=True,
        ).start()

    def handle_message(self, payload: bytes) -> Response:
        """Process one inbound payload and publish the response.

        Returns the response that was (or failed to be) published.
        """
        log.info("Received encrypted command")
        response = self.build_response(payload)
        self.send_response(response)
        return response

    def build_response(self, payload: bytes) -> Response:
        """Decrypt, parse, validate and execute; every path yields a Response."""
        try:
            plaintext = self.cipher.open(payload)
        except DecryptionError as e:
            log.warning(f"Decryption failed: {e}")
            return failure(MSG_DECRYPTION_FAILED)

        try:
            command = Command.from_json(plaintext)
        except ProtocolError as e:
            log.warning(f"Invalid command format: {e}")
            return failure(MSG_INVALID_FORMAT)

        try:
            command.validate()
        except ValidationError:
            log.warning("Empty command received")
            return failure(MSG_NO_COMMAND)

        if command.action and command.action != ACTION_EXEC:
            log.warning(f"Unknown action {command.action!r}, executing anyway")

        return self.execute_command(command)

    def execute_command(self, command: Command) -> Response:
        """Run a validated command and describe the outcome."""
        result = self.executor.execute(command.argv)
        data = {
            DATA_COMMAND: result.command,
            DATA_OUTPUT: result.output,
        }
        if not result.ok:
            data[DATA_ERROR] = result.error
            return failure(MSG_EXEC_FAILED, data)
        return success(MSG_EXEC_OK, data)

    def send_response(self, response: Response) -> bool:
        """Seal and publish a response. Failures are logged, never raised."""
        try:
            encrypted = self.cipher.seal(response.to_json())
        except EncryptionError as e:
            log.error(f"Failed to encrypt response: {e}")
            return False

        try:
            self.transport.publish(self.topics.response, encrypted)
        except PublishError as e:
            log.error(f"Failed to publish response: {e}")
            return False

        log.info(f"Response sent (success={response.success})")
        return True


def configure_logging(level=logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def load_config(args: argparse.Namespace) -> ShellConfig:
    if args.config:
        config = ShellConfig.from_file(args.config, role=ROLE_SERVER)
    else:
        config = ShellConfig.from_env(role=ROLE_SERVER)
    config = config.merged({
        "broker_url": args.broker,
        "topic_prefix": args.prefix,
        "exec_timeout": args.timeout,
        "log_level": args.log_level,
    })
    config.validate()
    return config


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="MQTT Shell Agent (command server)")
    parser.add_argument("--config", "-c",
                        help="YAML config file (overrides environment)")
    parser.add_argument("--broker", "-b",
                        help="Broker URL, e.g. tcp://localhost:1883")
    parser.add_argument("--prefix", "-p",
                        help="Topic prefix (default: mqtt-shell)")
    parser.add_argument("--timeout", "-t", type=float,
                        help="Command execution timeout in seconds (default: 30)")
    parser.add_argument("--log-level", "-l",
                        help="Log level (default: INFO)")
    args = parser.parse_args(argv)

    configure_logging()
    log.info(f"Secure MQTT Shell Server v{__version__}")

    try:
        config = load_config(args)
    except ConfigurationError as e:
        log.critical(f"Failed to load config: {e}")
        return 1
    logging.getLogger().setLevel(config.log_level.upper())

    try:
        transport = MQTTTransport(config)
    except ConfigurationError as e:
        log.critical(f"Failed to setup TLS: {e}")
        return 1

    agent = ShellAgent(config, transport)
    agent.start()

    stop = threading.Event()

    def signal_handler(signum, frame):
        log.info("Received shutdown signal")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, signal_handler)

    try:
        transport.connect()
    except BrokerConnectionError as e:
        log.critical(f"Failed to connect to MQTT: {e}")
        return 1

    log.info("Server started successfully")
    log.info("Waiting for commands...")

    stop.wait()

    log.info("Shutting down...")
    transport.disconnect()
    log.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
