"""Error taxonomy for the guidance engine.

Every error carries a stable ``code`` so transports can pick a status code
without the engine knowing about them.
"""

from __future__ import annotations


class GuidanceError(Exception):
    """Base class for all engine errors."""

    code = "guidance_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class NotFound(GuidanceError):
    """Script, version, run, node or target is absent."""

    code = "not_found"


class InvalidDefinition(GuidanceError):
    """A script version's graph cannot be executed as defined."""

    code = "invalid_definition"


class InvalidState(GuidanceError):
    """Operation is not allowed in the record's current state."""

    code = "invalid_state"


class BadRequest(GuidanceError):
    """Requested operation does not fit the node or run it targets."""

    code = "bad_request"


class ConcurrentModification(BadRequest):
    """A run was changed by another writer between read and write."""

    code = "concurrent_modification"


class DispatchFailure(GuidanceError):
    """The action dispatcher raised while executing an ACTION node."""

    code = "dispatch_failure"

    def __init__(self, action: str, message: str):
        super().__init__(message)
        self.action = action

    def to_dict(self) -> dict[str, str]:
        data = super().to_dict()
        data["action"] = self.action
        return data
