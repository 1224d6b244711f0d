"""Error taxonomy shared by the agent and the controller."""


class ShellError(Exception):
    """Base class for every error raised by this project."""
    pass


class ConfigurationError(ShellError):
    """Raised at startup for missing or invalid configuration."""
    pass


class BrokerConnectionError(ShellError, ConnectionError):
    """Raised when the initial broker connection cannot be established."""
    pass


class EncryptionError(ShellError):
    """Raised when a payload cannot be sealed."""
    pass


class DecryptionError(ShellError):
    """Raised when an envelope does not decode or does not authenticate."""
    pass


class ProtocolError(ShellError):
    """Raised when a decrypted payload is not a well-formed message."""
    pass


class ValidationError(ShellError):
    """Raised when a well-formed command is missing required content."""
    pass


class ExecutionError(ShellError):
    """Raised when a command exits non-zero, times out or cannot start.

    Carries whatever output the command produced before it failed.
    """

    def __init__(self, message, output="", returncode=None, timed_out=False):
        super().__init__(message)
        self.output = output
        self.returncode = returncode
        self.timed_out = timed_out


class PublishError(ShellError):
    """Raised when the transport fails to publish a payload."""
    pass
