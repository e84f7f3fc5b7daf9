"""
Utility functions for API responses
"""


def success_response(data=None, message=None, status_code=200):
    response_body = {"success": True}
    if data is not None:
        response_body["data"] = data
    if message is not None:
        response_body["message"] = message
    return response_body, status_code


def error_response(message, details=None, status_code=400):
    response_body = {
        "success": False,
        "error": message
    }
    if details is not None:
        response_body["details"] = details
    return response_body, status_code


def exception_response(exc):
    """Map a RuckCoreError onto an error response using its HTTP status."""
    body, status = error_response(exc.message, details=exc.details, status_code=exc.http_status)
    body["error_type"] = type(exc).__name__
    return body, status
