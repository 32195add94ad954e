from enum import Enum
from typing import Any, Dict, List


class AuthErrorReason(str, Enum):
    MALFORMED_TOKEN = "malformed_token"
    EXPIRED_TOKEN = "expired_token"
    MISSING_TENANT = "missing_tenant"
    INVALID_CLAIMS = "invalid_claims"


class AuthError(Exception):
    """Bearer token rejected by the validator."""

    def __init__(self, reason: AuthErrorReason, message: str = ""):
        self.reason = reason
        self.message = message or reason.value
        super().__init__(f"{reason.value}: {self.message}")


class TransportError(Exception):
    """Backend call failed outright (network error, timeout or unexpected status)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ProvisioningError(Exception):
    """Destination template or data stream could not be created."""

    def __init__(self, destination: str, message: str):
        self.destination = destination
        super().__init__(f"failed provisioning {destination}: {message}")


class PartialWriteError(Exception):
    """Bulk request accepted by the backend but some items were rejected."""

    def __init__(self, response: Dict[str, Any]):
        self.response = response
        self.items: List[Dict[str, Any]] = response.get("items", [])
        self.failures: List[Dict[str, Any]] = []
        for item in self.items:
            # Each item is keyed by its action name, e.g. {"create": {...}}
            result = next(iter(item.values()), {})
            error = result.get("error")
            if error:
                if not isinstance(error, dict):
                    error = {"reason": str(error)}
                self.failures.append(
                    {
                        "_index": result.get("_index"),
                        "status": result.get("status"),
                        "type": error.get("type"),
                        "reason": error.get("reason"),
                    }
                )
        super().__init__(
            f"bulk write rejected {len(self.failures)} of {len(self.items)} items"
        )
