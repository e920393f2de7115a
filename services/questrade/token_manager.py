# services/questrade/token_manager.py
"""
Questrade OAuth2 token lifecycle.

Questrade refresh tokens are single use: every exchange returns a new
access/refresh pair and the old refresh token stops working. All tokens for a
person are therefore replaced as a set after each successful exchange.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.person import Person
from models.token import TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH, Token
from services.questrade.errors import (
    QuestradeConnectionError,
    QuestradeError,
    QuestradeUnavailableError,
    TokenInvalidError,
    TokenMissingError,
)
from services.questrade.questrade_config import (
    MIN_REFRESH_TOKEN_LENGTH,
    QUESTRADE_AUTH_TIMEOUT,
    QUESTRADE_AUTH_URL,
    REFRESH_TOKEN_TTL_DAYS,
)
from services.questrade.token_crypto import decrypt_token, encrypt_token
from utils.common_helpers import isoformat, safe_json, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AccessCredentials:
    access_token: str
    api_server: str
    person_name: str


def _latest_token(db: Session, person_name: str, token_type: str, *, unexpired: bool = False) -> Optional[Token]:
    query = db.query(Token).filter(
        Token.person_name == person_name,
        Token.type == token_type,
        Token.is_active.is_(True),
    )
    if unexpired:
        query = query.filter(Token.expires_at > utcnow())
    return query.order_by(Token.created_at.desc(), Token.id.desc()).first()


def _exchange_refresh_token(refresh_token: str, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    url = f"{QUESTRADE_AUTH_URL}/oauth2/token"
    params = {"grant_type": "refresh_token", "refresh_token": refresh_token}
    if client is not None:
        resp = client.get(url, params=params, timeout=QUESTRADE_AUTH_TIMEOUT)
    else:
        with httpx.Client(timeout=QUESTRADE_AUTH_TIMEOUT) as http:
            resp = http.get(url, params=params)
    resp.raise_for_status()
    data = safe_json(resp)
    if data is None:
        # maintenance pages come back as 200 text/html
        raise QuestradeUnavailableError("Questrade token endpoint returned an unreadable response")
    return data


def _map_exchange_error(exc: Exception, person_name: str) -> QuestradeError:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        logger.error("Questrade token endpoint returned %s for %s", status, person_name)
        if status == 400:
            return TokenInvalidError(
                f"Invalid or expired refresh token for {person_name}. Please update the refresh token.",
                person_name=person_name,
            )
        if status == 401:
            return TokenInvalidError(
                f"Unauthorized access for {person_name}. Token may be invalid.",
                person_name=person_name,
            )
        if status >= 500:
            return QuestradeUnavailableError(
                "Questrade server error. Please try again later.", person_name=person_name
            )
        return QuestradeError(f"Questrade token request failed with status {status}", person_name=person_name)
    if isinstance(exc, httpx.TimeoutException):
        return QuestradeConnectionError(
            "Request to Questrade API timed out. Please try again.", person_name=person_name
        )
    if isinstance(exc, httpx.TransportError):
        return QuestradeConnectionError(
            "Unable to connect to Questrade API. Please check your internet connection.",
            person_name=person_name,
        )
    if isinstance(exc, QuestradeError):
        return exc
    return QuestradeError(str(exc), person_name=person_name)


def _store_token_pair(
    db: Session,
    person_name: str,
    *,
    access_token: str,
    refresh_token: str,
    api_server: Optional[str],
    expires_in: int,
) -> None:
    now = utcnow()
    db.query(Token).filter(Token.person_name == person_name).delete(synchronize_session="fetch")
    db.add(Token(
        person_name=person_name,
        type=TOKEN_TYPE_ACCESS,
        encrypted_token=encrypt_token(access_token),
        api_server=api_server,
        expires_at=now + timedelta(seconds=int(expires_in or 1800)),
        is_active=True,
    ))
    db.add(Token(
        person_name=person_name,
        type=TOKEN_TYPE_REFRESH,
        encrypted_token=encrypt_token(refresh_token),
        api_server=api_server,
        expires_at=now + timedelta(days=REFRESH_TOKEN_TTL_DAYS),
        is_active=True,
    ))


def get_valid_access_token(
    db: Session,
    person_name: str,
    *,
    client: Optional[httpx.Client] = None,
) -> AccessCredentials:
    """Return a live access token for the person, refreshing it when needed."""
    row = _latest_token(db, person_name, TOKEN_TYPE_ACCESS, unexpired=True)
    if row is not None:
        row.last_used = utcnow()
        db.commit()
        return AccessCredentials(
            access_token=decrypt_token(row.encrypted_token),
            api_server=row.api_server or "",
            person_name=person_name,
        )

    logger.info("Access token expired for %s, refreshing", person_name)
    return refresh_access_token(db, person_name, client=client)


def refresh_access_token(
    db: Session,
    person_name: str,
    *,
    client: Optional[httpx.Client] = None,
) -> AccessCredentials:
    refresh_row = _latest_token(db, person_name, TOKEN_TYPE_REFRESH)
    if refresh_row is None:
        error = TokenMissingError(f"No active refresh token found for {person_name}", person_name=person_name)
        record_token_error(db, person_name, error.message)
        raise error

    try:
        refresh_token = decrypt_token(refresh_row.encrypted_token).strip()
        if len(refresh_token) < MIN_REFRESH_TOKEN_LENGTH:
            raise TokenInvalidError(f"Invalid refresh token format for {person_name}", person_name=person_name)

        logger.info("Refreshing access token for %s", person_name)
        data = _exchange_refresh_token(refresh_token, client)
        if not data.get("access_token") or not data.get("refresh_token"):
            raise TokenInvalidError(
                "Invalid response from Questrade API - missing tokens", person_name=person_name
            )
    except (httpx.HTTPError, QuestradeError) as exc:
        error = _map_exchange_error(exc, person_name)
        record_token_error(db, person_name, error.message)
        if error is exc:
            raise
        raise error from exc

    _store_token_pair(
        db,
        person_name,
        access_token=data["access_token"],
        refresh_token=data["refresh_token"],
        api_server=data.get("api_server"),
        expires_in=data.get("expires_in") or 1800,
    )

    person = db.query(Person).filter(Person.person_name == person_name).first()
    if person is not None:
        person.has_valid_token = True
        person.last_token_refresh = utcnow()
        person.last_sync_error = None
    db.commit()

    logger.info("Token refreshed successfully for %s", person_name)
    return AccessCredentials(
        access_token=data["access_token"],
        api_server=data.get("api_server") or "",
        person_name=person_name,
    )


def setup_person_token(
    db: Session,
    person_name: str,
    refresh_token: str,
    *,
    display_name: Optional[str] = None,
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    """
    Exchange a manually generated refresh token and store the resulting pair.

    The person row is created when missing and (re)activated otherwise.
    """
    clean = (refresh_token or "").strip()
    if len(clean) < MIN_REFRESH_TOKEN_LENGTH:
        raise TokenInvalidError(
            "Invalid refresh token format. Please ensure you have copied the complete token from Questrade.",
            person_name=person_name,
        )

    logger.info("Setting up token for %s", person_name)
    try:
        data = _exchange_refresh_token(clean, client)
    except httpx.HTTPError as exc:
        raise _map_exchange_error(exc, person_name) from exc

    if not data.get("access_token"):
        raise TokenInvalidError(
            "Invalid refresh token - could not obtain access token", person_name=person_name
        )

    _store_token_pair(
        db,
        person_name,
        access_token=data["access_token"],
        # the submitted token is consumed by the exchange; keep the rotated one
        refresh_token=data.get("refresh_token") or clean,
        api_server=data.get("api_server"),
        expires_in=data.get("expires_in") or 1800,
    )

    person = db.query(Person).filter(Person.person_name == person_name).first()
    if person is None:
        person = Person(person_name=person_name)
        db.add(person)
    if display_name is not None:
        person.display_name = display_name
    elif not person.display_name:
        person.display_name = person_name
    if email is not None:
        person.email = email
    if phone_number is not None:
        person.phone_number = phone_number
    person.is_active = True
    person.has_valid_token = True
    person.last_token_refresh = utcnow()
    person.last_sync_error = None
    db.commit()

    logger.info("Token setup completed for %s", person_name)
    return {"success": True, "person_name": person_name, "api_server": data.get("api_server")}


def validate_refresh_token(refresh_token: str, *, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    """
    Check a refresh token against Questrade without persisting anything.

    A successful check consumes the token; the caller must use the rotated one.
    """
    clean = (refresh_token or "").strip()
    if len(clean) < MIN_REFRESH_TOKEN_LENGTH:
        return {"valid": False, "error": "Invalid refresh token format"}
    try:
        data = _exchange_refresh_token(clean, client)
    except httpx.HTTPStatusError as exc:
        detail = exc.response.text or exc.response.reason_phrase
        return {"valid": False, "error": detail}
    except httpx.HTTPError as exc:
        return {"valid": False, "error": str(exc) or exc.__class__.__name__}
    except QuestradeError as exc:
        return {"valid": False, "error": exc.message}
    return {
        "valid": True,
        "api_server": data.get("api_server"),
        "expires_in": data.get("expires_in"),
        "refresh_token": data.get("refresh_token"),
    }


def get_token_status(db: Session, person_name: str) -> Dict[str, Any]:
    refresh_row = _latest_token(db, person_name, TOKEN_TYPE_REFRESH)
    access_row = _latest_token(db, person_name, TOKEN_TYPE_ACCESS, unexpired=True)
    last_error = refresh_row.last_error if refresh_row else None
    return {
        "person_name": person_name,
        "refresh_token": {
            "exists": refresh_row is not None,
            "expires_at": isoformat(refresh_row.expires_at) if refresh_row else None,
            "last_used": isoformat(refresh_row.last_used) if refresh_row else None,
            "error_count": refresh_row.error_count if refresh_row else 0,
            "last_error": last_error,
        },
        "access_token": {
            "exists": access_row is not None,
            "expires_at": isoformat(access_row.expires_at) if access_row else None,
            "api_server": access_row.api_server if access_row else None,
            "last_used": isoformat(access_row.last_used) if access_row else None,
        },
        "is_healthy": refresh_row is not None and (access_row is not None or not last_error),
    }


def get_all_token_status(db: Session) -> List[Dict[str, Any]]:
    persons = db.query(Person).filter(Person.is_active.is_(True)).order_by(Person.person_name).all()
    return [get_token_status(db, p.person_name) for p in persons]


def record_token_error(db: Session, person_name: str, message: str) -> None:
    """Stamp the failure on the refresh token and the person. Never raises."""
    try:
        refresh_row = _latest_token(db, person_name, TOKEN_TYPE_REFRESH)
        if refresh_row is not None:
            refresh_row.error_count = (refresh_row.error_count or 0) + 1
            refresh_row.last_error = message
            refresh_row.last_used = utcnow()
        person = db.query(Person).filter(Person.person_name == person_name).first()
        if person is not None:
            person.has_valid_token = False
            person.last_sync_error = message
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record token error for %s", person_name)


def mark_token_success(db: Session, person_name: str) -> None:
    refresh_row = _latest_token(db, person_name, TOKEN_TYPE_REFRESH)
    if refresh_row is not None:
        refresh_row.error_count = 0
        refresh_row.last_error = None
        refresh_row.last_successful_use = utcnow()
    db.commit()


def test_connection(
    db: Session,
    person_name: str,
    *,
    client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    try:
        creds = get_valid_access_token(db, person_name, client=client)
        url = f"{creds.api_server.rstrip('/')}/v1/time"
        headers = {"Authorization": f"Bearer {creds.access_token}"}
        if client is not None:
            resp = client.get(url, headers=headers, timeout=QUESTRADE_AUTH_TIMEOUT)
        else:
            with httpx.Client(timeout=QUESTRADE_AUTH_TIMEOUT) as http:
                resp = http.get(url, headers=headers)
        resp.raise_for_status()
    except (httpx.HTTPError, QuestradeError) as exc:
        message = getattr(exc, "message", None) or str(exc)
        logger.warning("Connection test failed for %s: %s", person_name, message)
        return {"success": False, "person_name": person_name, "error": message}

    mark_token_success(db, person_name)
    return {
        "success": True,
        "person_name": person_name,
        "server_time": (safe_json(resp) or {}).get("time"),
        "api_server": creds.api_server,
    }


def refresh_all_tokens(db: Session, *, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    """Rotate tokens for every active person; failures are collected, not raised."""
    persons = db.query(Person).filter(Person.is_active.is_(True)).all()
    refreshed: List[str] = []
    failed: List[Dict[str, str]] = []
    for person in persons:
        try:
            refresh_access_token(db, person.person_name, client=client)
            refreshed.append(person.person_name)
        except QuestradeError as exc:
            logger.warning("Token refresh failed for %s: %s", person.person_name, exc.message)
            failed.append({"person_name": person.person_name, "error": exc.message})
    return {"refreshed": refreshed, "failed": failed}


def remove_person(db: Session, person_name: str) -> None:
    db.query(Token).filter(Token.person_name == person_name).update(
        {Token.is_active: False}, synchronize_session="fetch"
    )
    person = db.query(Person).filter(Person.person_name == person_name).first()
    if person is not None:
        person.is_active = False
        person.has_valid_token = False
    db.commit()
    logger.info("Deactivated person %s and their tokens", person_name)

