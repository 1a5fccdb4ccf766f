class PrimisError(Exception):
    """Base exception for all primis errors."""


class DuplicateKey(PrimisError):
    """A device with this IMEI already exists."""

    def __init__(self, imei: str) -> None:
        self.imei = imei
        super().__init__(f"Device with IMEI {imei} already exists")


class UnknownDevice(PrimisError):
    """The target device does not exist."""

    def __init__(self, imei: str) -> None:
        self.imei = imei
        super().__init__(f"Device not found with IMEI: {imei}")


class MalformedTopic(PrimisError):
    """No IMEI could be extracted from the topic."""

    def __init__(self, topic: str) -> None:
        self.topic = topic
        super().__init__(f"Could not extract IMEI from topic: {topic}")


class TransportUnavailable(PrimisError):
    """Storage or messaging connection is down or timed out."""


class StartupFailure(PrimisError):
    """Storage is unreachable while the process starts."""
