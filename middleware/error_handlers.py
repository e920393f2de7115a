"""
FastAPI exception handlers.

Domain errors become ``{success: false, error, code, user_message, suggestions}``
with the status code carried by the error class. Anything unexpected is logged
and returned as a generic 500.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from services.questrade import errors as qe
from utils.common_helpers import isoformat, utcnow

logger = logging.getLogger(__name__)

USER_MESSAGES = {
    qe.TOKEN_EXPIRED: "Your access token has expired. It will be refreshed automatically on the next request.",
    qe.TOKEN_INVALID: "Your authentication token is invalid. Please update the Questrade refresh token in Settings.",
    qe.TOKEN_MISSING: "No valid authentication token found. Please add a Questrade refresh token in Settings.",
    qe.PERSON_NOT_FOUND: "Person not found. Check the person name or add them in Settings.",
    qe.PERSON_INACTIVE: "This person is inactive. Reactivate them in Settings before syncing.",
    qe.API_CONNECTION_FAILED: "Unable to connect to the Questrade API. Please try again shortly.",
    qe.REFRESH_TOKEN_EXPIRED: "Your refresh token has expired. Generate a new one in Questrade and update it in Settings.",
    qe.QUESTRADE_API_ERROR: "Questrade returned an error. Please try again or check the account status.",
    qe.SYNC_IN_PROGRESS: "A sync is already running for this person. Wait for it to finish.",
}

_TOKEN_STEPS = [
    "Go to Settings and open Token Management",
    "Add or update the Questrade refresh token",
    "Generate a new refresh token in Questrade if needed",
]

SUGGESTIONS = {
    qe.TOKEN_EXPIRED: [
        "The token will be refreshed automatically",
        "If this persists, check the refresh token in Settings",
    ],
    qe.TOKEN_INVALID: _TOKEN_STEPS,
    qe.TOKEN_MISSING: _TOKEN_STEPS,
    qe.PERSON_NOT_FOUND: [
        "Go to Settings and open Person Management",
        "Add the person with their refresh token",
        "Check the spelling of the person name",
    ],
    qe.API_CONNECTION_FAILED: [
        "Check the network connection",
        "Verify Questrade services are operational",
        "Try again in a few minutes",
    ],
    qe.REFRESH_TOKEN_EXPIRED: [
        "Log into Questrade and open API Centre",
        "Generate a new manual refresh token",
        "Update the token in Settings",
    ],
}

DEFAULT_SUGGESTIONS = [
    "Try refreshing the page",
    "Check Settings for token issues",
]


def error_payload(code: str, message: str) -> dict:
    return {
        "success": False,
        "error": message,
        "code": code,
        "user_message": USER_MESSAGES.get(code, message),
        "suggestions": SUGGESTIONS.get(code, DEFAULT_SUGGESTIONS),
        "timestamp": isoformat(utcnow()),
    }


async def questrade_error_handler(request: Request, exc: qe.QuestradeError) -> JSONResponse:
    logger.warning(
        "api_error path=%s code=%s status=%s message=%s",
        request.url.path, exc.code, exc.status_code, exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc.code, exc.message))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "code": "INTERNAL_ERROR",
            "timestamp": isoformat(utcnow()),
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(qe.QuestradeError, questrade_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
