"""
Error taxonomy shared by the relay and the session client
"""


class SyncError(Exception):
    """Base class for every recoverable session/sync failure"""


class InvalidCode(SyncError):
    """No live room holds the given session code"""

    def __init__(self, code: str = ""):
        super().__init__("Invalid code")
        self.code = code


class InvalidCodeFormat(SyncError):
    def __init__(self, code: str = ""):
        super().__init__("Invalid session code. Enter 6 digits.")
        self.code = code


class RequestTimeout(SyncError):
    pass


class ChannelUnavailable(SyncError):
    pass


class Unauthorized(SyncError):
    pass


class SessionError(SyncError):
    """The relay answered a request with an error string"""


class CodeSpaceExhausted(SyncError):
    pass


class ProtocolError(SyncError):
    def __init__(self, message: str, request_id=None):
        super().__init__(message)
        self.request_id = request_id
