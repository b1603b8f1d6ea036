# classes/errors.py

from typing import Any, Dict


class BackendError(Exception):
    """
    Request-level failure carrying the HTTP status and JSON body to return.
    """

    def __init__(self, status_code: int, payload: Dict[str, Any] | str):
        if isinstance(payload, str):
            payload = {"error": payload}
        super().__init__(payload.get("error") or str(payload))
        self.status_code = status_code
        self.payload = payload


class WebhookRejected(Exception):
    """
    Raised before any event is processed (bad signature, bad body, missing secret).
    """

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
