from stockledger.schemas.common import ErrorOut

_ERROR_EXAMPLES: dict[int, list[tuple[str, str]]] = {
    400: [("bad_request", "SKU already exists")],
    401: [("unauthorized", "Invalid token")],
    403: [("forbidden", "Insufficient role for this action")],
    404: [("not_found", "Product not found")],
    409: [
        ("insufficient_stock", "Insufficient stock: available 6, requested 10"),
        ("concurrency_conflict", "Product stock changed concurrently; gave up after 5 attempts"),
        ("idempotency_key_conflict", "Idempotency key was already used for a different movement"),
        ("conflict", "Movement has already been reversed"),
    ],
    422: [("validation_error", "Validation failed")],
    429: [("rate_limited", "Too many failed attempts. Try again later.")],
    500: [("internal_error", "Internal server error")],
}

_DESCRIPTIONS = {
    400: "Bad request",
    401: "Missing or invalid bearer token",
    403: "Role not allowed",
    404: "Resource not found",
    409: "Rejected against current ledger state",
    422: "Validation error",
    429: "Too many requests",
    500: "Internal server error",
}


def _envelope(code: str, message: str) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "request_id": "request-id",
            "path": "/example",
            "details": None,
        }
    }


def error_responses(*status_codes: int) -> dict[int, dict]:
    """OpenAPI `responses` entries for the shared error envelope."""
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        examples = _ERROR_EXAMPLES.get(status_code, [("http_error", "HTTP error")])
        if len(examples) == 1:
            content = {"example": _envelope(*examples[0])}
        else:
            content = {
                "examples": {
                    code: {"summary": code, "value": _envelope(code, message)}
                    for code, message in examples
                }
            }
        responses[status_code] = {
            "model": ErrorOut,
            "description": _DESCRIPTIONS.get(status_code, "HTTP error"),
            "content": {"application/json": content},
        }
    return responses
