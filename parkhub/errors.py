from typing import List, Optional


class ParkingError(Exception):
    """Base error raised by the parking core.

    Carries enough structure (kind, message, details) for the HTTP layer to
    pick a status code; the core never builds responses itself.
    """

    status_code = 500
    kind = "internal"

    def __init__(self, message: str, details: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = list(details or [])

    def to_dict(self) -> dict:
        return {
            "status": "error",
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ParkingError):
    status_code = 400
    kind = "validation"


class UnauthorizedError(ParkingError):
    status_code = 401
    kind = "unauthorized"


class NotFoundError(ParkingError):
    status_code = 404
    kind = "not_found"


class ConflictError(ParkingError):
    status_code = 409
    kind = "conflict"


class InternalError(ParkingError):
    status_code = 500
    kind = "internal"


class InvalidVehicleClass(ValidationError):
    def __init__(self, value) -> None:
        super().__init__(f"Invalid vehicle class: {value}")


class InvalidBillingMode(ValidationError):
    def __init__(self, value) -> None:
        super().__init__(f"Invalid billing mode: {value}")


class SessionNotActive(ConflictError):
    def __init__(self, session_id) -> None:
        super().__init__(f"Session {session_id} is not active")
