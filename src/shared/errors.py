class SimulationError(Exception):
    """
    Base class for every error the tick engine and market raise on purpose.

    Propagation policy:
        - AuthError / ValidationError abort a request before any state changes.
        - InsufficientAssetError / ConcurrencyConflictError skip a single match
          or queue item; the caller moves on to the next candidate.
        - InternalError marks an unexpected failure inside one stage; the
          Engine isolates it per system, the TerritorySystem per territory.
    """
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(SimulationError):
    status_code = 401


class PermissionDenied(AuthError):
    """Valid credential, but the caller lacks the required role."""
    status_code = 403


class ValidationError(SimulationError):
    status_code = 400


class InsufficientAssetError(SimulationError):
    status_code = 400


class ConcurrencyConflictError(SimulationError):
    status_code = 409


class InternalError(SimulationError):
    status_code = 500
