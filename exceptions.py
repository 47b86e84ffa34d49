from typing import Optional

class FocoError(Exception):
    """Base exception for all bridge errors"""

class TransportUnavailable(FocoError):
    """
    A command arrived while the broker connection is down.
    Raised before any state mutation; the HTTP layer answers 503.
    """

    def __init__(self, message: str = "Servidor MQTT no disponible"):
        super().__init__(message)

class InvalidValue(FocoError):
    """A command carried a value outside {on, off}"""

    def __init__(self, value: object):
        self.value = value
        super().__init__(f'Estado debe ser "on" o "off" (recibido: {value!r})')

class ConnectTimeout(FocoError):
    def __init__(self, broker: str, timeout: float):
        self.broker     = broker
        self.timeout    = timeout
        super().__init__(f"No connection to {broker} after {timeout:g}s")

class PublishFailure(FocoError):
    def __init__(self, topic: str, reason: object):
        self.topic      = topic
        self.reason     = reason
        super().__init__(f"Publish to {topic} failed: {reason}")

class DecodeError(FocoError):
    """An inbound payload could not be decoded into a known message kind"""

    def __init__(self, message: str, payload: Optional[bytes] = None):
        self.payload    = payload
        super().__init__(message)
