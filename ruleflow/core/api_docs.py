from ruleflow.schemas.common import ErrorOut


_ERROR_EXAMPLES: dict[int, tuple[str, str]] = {
    400: ("bad_request", "Webhook body must be valid JSON"),
    401: ("unauthorized", "Missing or invalid API key"),
    404: ("not_found", "Automation rule not found"),
    409: ("conflict", "Automation rule name already exists"),
    422: ("validation_error", "Validation failed"),
    500: ("internal_error", "Internal server error"),
}


def error_responses(
    *status_codes: int,
    path: str = "/automations/rules",
    messages: dict[int, str] | None = None,
) -> dict[int, dict]:
    """OpenAPI ``responses`` entries sharing the ErrorOut envelope.

    ``messages`` overrides the example message per status for routes whose
    failures read differently (webhook signatures, execution lookups).
    """
    overrides = messages or {}
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error"))
        message = overrides.get(status_code, message)
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": path,
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
