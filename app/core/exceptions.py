"""Domain exceptions and their HTTP mapping."""

from fastapi import Request
from fastapi.responses import JSONResponse

from app.models.enums import UtilityType


class ConflictError(Exception):
    """Meter allocation would cover a unit that already has an active meter.

    Carries every offending ``(unit_id, utility_type)`` pair so the caller can
    show all conflicts at once rather than one per attempt.
    """

    def __init__(self, conflicts: list[tuple[str, UtilityType]]):
        self.conflicts = sorted(set(conflicts))
        units = ", ".join(unit_id for unit_id, _ in self.conflicts)
        super().__init__(f"Units already covered by an active meter: {units}")

    def to_payload(self) -> dict:
        """Serialize for the 422 response body."""
        return {
            "message": str(self),
            "conflicts": [
                {"unit_id": unit_id, "utility_type": utility_type.value}
                for unit_id, utility_type in self.conflicts
            ],
        }


async def conflict_error_handler(request: Request, exc: ConflictError) -> JSONResponse:
    """Render a ConflictError as ``422 {message, conflicts}``."""
    return JSONResponse(
        status_code=422,
        content=exc.to_payload(),
    )
