"""
Error taxonomy for the gateway.

Every error carries the HTTP status used when it escapes on the synchronous
path of a request. Once a chat stream has started, errors are reported in-band
as an ``error`` event instead (see ``gateway.core.relay``).
"""


class GatewayError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(GatewayError):
    """Missing or malformed request fields. Raised before any side effect."""

    status_code = 400


class ConversationNotFound(GatewayError):
    status_code = 404

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class PersistenceFailure(GatewayError):
    """A storage read or write failed."""

    status_code = 500


class UpstreamUnavailable(GatewayError):
    """Transport-level failure talking to the inference service."""

    status_code = 503


class UpstreamProtocolError(GatewayError):
    """The inference service answered, but not with something usable."""

    status_code = 502

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        detail = message
        if status_code is not None:
            detail = f"{message}: status {status_code}: {body}" if body else f"{message}: status {status_code}"
        super().__init__(detail)
        self.upstream_status = status_code
        self.body = body
