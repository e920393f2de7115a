from typing import Iterator

import httpx
from fastapi import Depends
from sqlalchemy.orm import Session

from database import get_db
from services.questrade.questrade_client import QuestradeClient
from services.questrade.questrade_config import QUESTRADE_API_TIMEOUT


def get_http_client() -> Iterator[httpx.Client]:
    with httpx.Client(timeout=QUESTRADE_API_TIMEOUT) as http:
        yield http


def get_questrade_client(
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
) -> QuestradeClient:
    return QuestradeClient(db, http_client=http)
