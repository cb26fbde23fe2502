import logging

from msgspec import DecodeError, json
from quart import Response, request

from common.errors import DBError, DependencyUnavailableError, ServiceError, ValidationError

DB_ERROR_STR = "DB error"


def json_response(value, status: int = 200) -> Response:
    return Response(json.encode(value), status=status, content_type="application/json")


def error_response(err: Exception) -> Response:
    if not isinstance(err, ServiceError):
        logging.error(f"Unexpected error: {err!r}")
        return json_response({"error": "Internal server error"}, 500)
    message = err.message
    if isinstance(err, DBError):
        message = DB_ERROR_STR
    response = json_response({"error": message, "retryable": err.retryable}, err.status_code)
    if isinstance(err, DependencyUnavailableError):
        response.headers["Retry-After"] = "15"
    return response


async def decode_body(type):
    """Decode the JSON request body into `type`, reporting bad input as a ValidationError."""
    body = await request.get_data()
    try:
        return json.decode(body, type=type), None
    except DecodeError as e:
        return None, ValidationError(f"Invalid request body: {e}")
