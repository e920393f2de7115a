"""
Thin authenticated wrapper over the Questrade REST API.

Every call resolves the person's access token first. A 401 triggers exactly one
token refresh and a single retry of the same request.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx
from sqlalchemy.orm import Session

from models.person import Person
from services.questrade import token_manager
from services.questrade.errors import (
    QuestradeAPIError,
    QuestradeConnectionError,
    QuestradeError,
    QuestradeUnavailableError,
)
from services.questrade.questrade_config import QUESTRADE_API_TIMEOUT
from utils.common_helpers import safe_json, utcnow

logger = logging.getLogger(__name__)

SymbolIds = Union[int, str, Iterable[Union[int, str]]]


def _join_ids(ids: SymbolIds) -> str:
    if isinstance(ids, (int, str)):
        return str(ids)
    return ",".join(str(i) for i in ids)


class QuestradeClient:
    def __init__(self, db: Session, http_client: Optional[httpx.Client] = None):
        self.db = db
        self._owns_client = http_client is None
        self.http = http_client or httpx.Client(timeout=QUESTRADE_API_TIMEOUT)

    def close(self) -> None:
        if self._owns_client:
            self.http.close()

    def __enter__(self) -> "QuestradeClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ─── core request ──────────────────────────────────────────────
    def request(
        self,
        endpoint: str,
        person_name: str,
        *,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        _retry_count: int = 0,
    ) -> Dict[str, Any]:
        creds = token_manager.get_valid_access_token(self.db, person_name, client=self.http)
        if not creds.api_server or not creds.access_token:
            raise QuestradeError(
                f"Unable to get valid API credentials for {person_name}", person_name=person_name
            )

        url = f"{creds.api_server.rstrip('/')}/v1{endpoint}"
        logger.debug("Questrade %s %s for %s", method, endpoint, person_name)
        try:
            resp = self.http.request(
                method,
                url,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {creds.access_token}"},
                timeout=QUESTRADE_API_TIMEOUT,
            )
        except httpx.TransportError as exc:
            logger.error("Network error for %s (%s): %s", endpoint, person_name, exc)
            raise QuestradeConnectionError(
                f"Unable to connect to Questrade API: {exc.__class__.__name__}", person_name=person_name
            ) from exc

        if resp.status_code == 401 and _retry_count == 0:
            logger.info("Received 401 for %s, refreshing token and retrying", person_name)
            token_manager.refresh_access_token(self.db, person_name, client=self.http)
            return self.request(
                endpoint, person_name, method=method, params=params, json=json, _retry_count=1
            )

        if resp.is_error:
            body = safe_json(resp) or {}
            detail = body.get("message") or resp.reason_phrase or "request failed"
            logger.error("Questrade request failed for %s (%s): status=%s", endpoint, person_name, resp.status_code)
            token_manager.record_token_error(self.db, person_name, detail)
            raise QuestradeAPIError(resp.status_code, detail, person_name=person_name)

        data = safe_json(resp)
        if data is None:
            logger.error("Unreadable response for %s (%s): status=%s", endpoint, person_name, resp.status_code)
            raise QuestradeUnavailableError(
                f"Questrade returned an unreadable response for {endpoint}", person_name=person_name
            )
        return data

    # ─── account endpoints ─────────────────────────────────────────
    def get_server_time(self, person_name: str) -> Optional[str]:
        return self.request("/time", person_name).get("time")

    def get_accounts(self, person_name: str) -> Dict[str, Any]:
        return self.request("/accounts", person_name)

    def get_account_positions(self, account_id: str, person_name: str) -> Dict[str, Any]:
        return self.request(f"/accounts/{account_id}/positions", person_name)

    def get_account_balances(self, account_id: str, person_name: str) -> Dict[str, Any]:
        return self.request(f"/accounts/{account_id}/balances", person_name)

    def get_account_activities(
        self,
        account_id: str,
        person_name: str,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = {}
        if start_time:
            params["startTime"] = start_time
        if end_time:
            params["endTime"] = end_time
        return self.request(f"/accounts/{account_id}/activities", person_name, params=params or None)

    def get_account_orders(
        self, account_id: str, person_name: str, state_filter: Optional[str] = None
    ) -> Dict[str, Any]:
        params = {"stateFilter": state_filter} if state_filter else None
        return self.request(f"/accounts/{account_id}/orders", person_name, params=params)

    # ─── market data ───────────────────────────────────────────────
    def get_symbol(self, symbol_id: Union[int, str], person_name: str) -> Dict[str, Any]:
        return self.request(f"/symbols/{symbol_id}", person_name)

    def get_symbols(
        self,
        person_name: str,
        *,
        ids: Optional[SymbolIds] = None,
        names: Optional[Union[str, Iterable[str]]] = None,
    ) -> Dict[str, Any]:
        if not ids and not names:
            raise ValueError("Either ids or names must be provided")
        params = {}
        if ids:
            params["ids"] = _join_ids(ids)
        if names:
            params["names"] = names if isinstance(names, str) else ",".join(names)
        return self.request("/symbols", person_name, params=params)

    def get_market_quote(self, symbol_ids: SymbolIds, person_name: str) -> Dict[str, Any]:
        return self.request("/markets/quotes", person_name, params={"ids": _join_ids(symbol_ids)})

    def get_snap_quote(self, symbol_ids: SymbolIds, person_name: str) -> Dict[str, Any]:
        """Real-time quote; counts against the account's snap quote allowance."""
        data = self.get_market_quote(symbol_ids, person_name)
        stamp = utcnow().isoformat()
        for quote in data.get("quotes") or []:
            quote["isSnapQuote"] = True
            quote["snapQuoteTime"] = stamp
        return data

    def get_markets(self, person_name: str) -> Dict[str, Any]:
        return self.request("/markets", person_name)

    def get_market_candles(
        self,
        symbol_id: Union[int, str],
        person_name: str,
        *,
        start_time: str,
        end_time: str,
        interval: str = "OneDay",
    ) -> Dict[str, Any]:
        params = {"startTime": start_time, "endTime": end_time, "interval": interval}
        return self.request(f"/markets/candles/{symbol_id}", person_name, params=params)

    def search_symbol(self, symbol: str, person_name: str) -> Optional[Dict[str, Any]]:
        try:
            result = self.get_symbols(person_name, names=symbol)
        except QuestradeError as exc:
            logger.error("Error searching for symbol %s (%s): %s", symbol, person_name, exc.message)
            return None
        symbols = result.get("symbols") or []
        return symbols[0] if symbols else None

    # ─── multi-person ──────────────────────────────────────────────
    def get_all_accounts_for_all_persons(self) -> Dict[str, Dict[str, Any]]:
        results: Dict[str, Dict[str, Any]] = {}
        persons: List[Person] = self.db.query(Person).filter(Person.is_active.is_(True)).all()
        for person in persons:
            try:
                accounts = self.get_accounts(person.person_name)
                results[person.person_name] = {"success": True, "accounts": accounts.get("accounts") or []}
            except QuestradeError as exc:
                logger.error("Error getting accounts for %s: %s", person.person_name, exc.message)
                results[person.person_name] = {"success": False, "error": exc.message}
        return results
