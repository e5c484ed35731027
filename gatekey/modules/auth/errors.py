"""Exceptions raised by the authentication module."""


class GatekeyError(Exception):
    """Base class for authentication module errors."""


class ApiKeyNotFoundError(GatekeyError):
    """No API key exists with the requested id."""

    def __init__(self, key_id: str):
        super().__init__(f"API key not found: {key_id}")
        self.key_id = key_id


class AuthorizationFailedError(GatekeyError):
    """Legacy ownership data could not be trusted."""

    def __init__(self, key_id: str, reason: str):
        super().__init__(f"Data migration authorization failed for key {key_id}: {reason}")
        self.key_id = key_id
        self.reason = reason
