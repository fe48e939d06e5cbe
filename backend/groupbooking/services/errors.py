"""HTTP errors carrying a machine-readable reason code."""
from fastapi import HTTPException, status


def api_error(status_code: int, code: str, message: str, **extra) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message, **extra})


def conflict(code: str, message: str) -> HTTPException:
    return api_error(status.HTTP_409_CONFLICT, code, message)


def not_found(code: str, message: str) -> HTTPException:
    return api_error(status.HTTP_404_NOT_FOUND, code, message)


def field_errors(errors: dict[str, str]) -> HTTPException:
    return api_error(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "validation_error",
        "Invalid event data",
        field_errors=errors,
    )


def gateway_error(message: str) -> HTTPException:
    return api_error(status.HTTP_502_BAD_GATEWAY, "gateway_error", message)
