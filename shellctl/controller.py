#!/usr/bin/env python3
"""
MQTT Shell Controller (operator client)

Responsibilities:
- Read command lines from the operator
- Send each one, encrypted, to the agent
- Wait (bounded) for the encrypted reply and display it
"""

import argparse
import logging
import sys
from typing import List, Optional

from shellproto import __version__
from shellproto.config import ROLE_CLIENT, ShellConfig
from shellproto.errors import (
    BrokerConnectionError,
    ConfigurationError,
    EncryptionError,
    PublishError,
)
from shellproto.protocol import Response
from shellproto.transport import MQTTTransport

from .correlator import Correlator, ReplyTimeoutError

log = logging.getLogger(__name__)

PROMPT = "\nremote> "
CLEAR_SCREEN = "\033[H\033[2J"

HELP_TEXT = """
Secure MQTT Shell - Help
===========================

Commands are executed on the remote system.

Examples:
  docker ps                    - List containers
  docker port webserver        - Show port mappings
  ip addr show                 - Show network interfaces
  ps aux                       - List processes
  free -m                      - Show memory usage
  df -h                        - Show disk usage

Commands run without a shell: pipes, redirects and globs are not
interpreted. Use  sh -c "..."  when you need them.

Shell Special commands:
  exit, quit   - Exit remote shell
  clear        - Clear screen
  help         - Show this help
"""


def parse_command_line(line: str) -> List[str]:
    """
    Split a command line into argv.

    Whitespace separates words, single or double quotes group them, and the
    other quote character inside a quoted run is literal. There are no
    escape characters. An unclosed quote runs to the end of the line.
    """
    parts: List[str] = []
    current: List[str] = []
    quote_char: Optional[str] = None

    for char in line:
        if quote_char:
            if char == quote_char:
                quote_char = None
            else:
                current.append(char)
        elif char in ("'", '"'):
            quote_char = char
        elif char.isspace():
            if current:
                parts.append("".join(current))
                current = []
        else:
            current.append(char)

    if current:
        parts.append("".join(current))
    return parts


def format_response(resp: Response) -> str:
    """Render a reply the way the interactive shell prints it."""
    lines = []
    if resp.success:
        lines.append(f"\nSuccess: {resp.message}")
    else:
        lines.append(f"\nFailed: {resp.message}")

    if resp.command is not None:
        lines.append(f"\nCommand: {resp.command}")

    output = resp.output
    if output is not None:
        lines.append("\nOutput:")
        lines.append("---")
        lines.append(output[:-1] if output.endswith("\n") else output)
        lines.append("---")

    if resp.error is not None:
        lines.append(f"\nError: {resp.error}")

    lines.append(f"\nTime: {resp.timestamp.strftime('%Y-%m-%d %H:%M:%S')}")
    return "\n".join(lines)


class ShellController:
    """Interactive read-send-wait-display loop."""

    def __init__(self, correlator: Correlator, timeout: float):
        self.correlator = correlator
        self.timeout = timeout

    def run_command(self, argv: List[str]) -> Optional[Response]:
        """Send one command and print the reply. Returns None on error/timeout."""
        try:
            self.correlator.send(argv)
        except (EncryptionError, PublishError) as e:
            print(f"Error sending command: {e}")
            return None

        print("Waiting for response...")
        try:
            resp = self.correlator.await_reply(self.timeout)
        except ReplyTimeoutError:
            print("Response timeout - server may be offline")
            return None

        print(format_response(resp))
        return resp

    def interactive_shell(self) -> None:
        """Prompt until exit/quit or end of input."""
        while True:
            try:
                line = input(PROMPT).strip()
            except EOFError:
                print("\nGoodbye!")
                return
            except KeyboardInterrupt:
                print("\n[i] Use 'exit' to quit.")
                continue

            if not line:
                continue

            if line in ("exit", "quit"):
                print("Goodbye!")
                return
            elif line == "clear":
                print(CLEAR_SCREEN, end="", flush=True)
                continue
            elif line == "help":
                self.show_help()
                continue

            argv = parse_command_line(line)
            if not argv:
                continue
            self.run_command(argv)

    def show_help(self) -> None:
        print(HELP_TEXT)


def on_connection_lost(reason: str) -> None:
    print(f"\nConnection lost: {reason}")
    print("Will attempt to reconnect...")


def load_config(args: argparse.Namespace) -> ShellConfig:
    if args.config:
        config = ShellConfig.from_file(args.config, role=ROLE_CLIENT)
    else:
        config = ShellConfig.from_env(role=ROLE_CLIENT)
    config = config.merged({
        "broker_url": args.broker,
        "topic_prefix": args.prefix,
        "response_timeout": args.timeout,
        "log_level": args.log_level,
    })
    config.validate()
    return config


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="MQTT Shell Controller")
    parser.add_argument("--config",
                        help="YAML config file (overrides environment)")
    parser.add_argument("--broker", "-b",
                        help="Broker URL, e.g. tcp://localhost:1883")
    parser.add_argument("--prefix", "-p",
                        help="Topic prefix (default: mqtt-shell)")
    parser.add_argument("--timeout", "-t", type=float,
                        help="Seconds to wait for a response (default: 15)")
    parser.add_argument("--log-level", "-l",
                        help="Log level (default: WARNING)")
    parser.add_argument("--command", "-c",
                        help="Run one command line and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    print(f"Secure MQTT Shell v{__version__}")
    print("================================")

    try:
        config = load_config(args)
        transport = MQTTTransport(config)
    except ConfigurationError as e:
        print(f"[!] {e}", file=sys.stderr)
        return 1
    logging.getLogger().setLevel(config.log_level.upper())

    transport.on_connection_lost = on_connection_lost
    correlator = Correlator(config, transport)
    correlator.start()

    try:
        transport.connect()
    except BrokerConnectionError as e:
        print(f"[!] Failed to connect: {e}", file=sys.stderr)
        return 1

    controller = ShellController(correlator, config.response_timeout)
    try:
        if args.command:
            parts = parse_command_line(args.command)
            if not parts:
                print("[!] Empty command", file=sys.stderr)
                return 1
            resp = controller.run_command(parts)
            return 0 if resp is not None and resp.success else 1

        print("\nConnected to MQTT broker")
        print("Listening for responses...")
        print("\nType commands to execute on remote system.")
        print("Special commands:")
        print("  exit, quit    - Exit the shell")
        print("  clear         - Clear screen")
        print("  help          - Show help")
        controller.interactive_shell()
        return 0
    finally:
        transport.disconnect()


if __name__ == "__main__":
    sys.exit(main())
