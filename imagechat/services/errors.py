import re
from typing import Any, Dict, Optional

# Upstream bodies that look like an HTML page or a JSON parse failure of one
_NON_JSON_HINTS = re.compile(
    r"<!doctype|<html|unexpected token '?<|is not valid json|expecting value", re.IGNORECASE
)

NON_JSON_CAUSE = (
    "The API returned a non-JSON response (likely an HTML error page). "
    "This usually means an invalid API key, a blocked region or proxy, or a service outage."
)


class UpstreamError(Exception):
    """A generation backend failed: transport error, bad status, bad body, timeout or no image."""

    def __init__(self, message: str, *, status: Optional[int] = None, non_json: bool = False,
                 no_image: bool = False, no_candidates: bool = False):
        super().__init__(message)
        self.message = message
        self.status = status
        self.non_json = non_json
        self.no_image = no_image
        self.no_candidates = no_candidates

    def looks_non_json(self) -> bool:
        return self.non_json or bool(_NON_JSON_HINTS.search(self.message or ""))


class GenerationError(Exception):
    """Terminal outcome of a generation request, already shaped for the HTTP response."""

    def __init__(self, status: int, error: str, details: Optional[str] = None,
                 possible_cause: Optional[str] = None):
        super().__init__(error)
        self.status = status
        self.error = error
        self.details = details
        self.possible_cause = possible_cause

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        if self.possible_cause is not None:
            body["possibleCause"] = self.possible_cause
        return body

    @classmethod
    def from_upstream(cls, err: UpstreamError) -> "GenerationError":
        if err.no_image:
            return cls(500, "No image generated in response")
        if err.no_candidates:
            return cls(500, "No valid response from Gemini API")
        cause = NON_JSON_CAUSE if err.looks_non_json() else None
        return cls(500, "Failed to generate image", details=err.message, possible_cause=cause)
