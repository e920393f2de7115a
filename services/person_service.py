# services/person_service.py
import logging
from math import fsum
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from models.account import Account
from models.activity import Activity
from models.person import Person
from models.portfolio_snapshot import PortfolioSnapshot
from models.position import Position
from models.token import Token
from schemas.account import AccountOut
from schemas.person import PersonOut
from services.questrade import token_manager
from utils.common_helpers import isoformat, to_float

logger = logging.getLogger(__name__)

_PERSON_SCOPED = (Token, Account, Position, Activity, PortfolioSnapshot)


def _get_active(db: Session, person_name: str) -> Optional[Person]:
    return (
        db.query(Person)
        .filter(Person.person_name == person_name, Person.is_active.is_(True))
        .first()
    )


def _dump(person: Person) -> Dict[str, Any]:
    return PersonOut.model_validate(person).model_dump(mode="json")


def list_persons(db: Session) -> List[Dict[str, Any]]:
    persons = db.query(Person).filter(Person.is_active.is_(True)).order_by(Person.person_name).all()
    out = []
    for person in persons:
        name = person.person_name
        out.append({
            **_dump(person),
            "account_count": db.query(Account).filter(Account.person_name == name).count(),
            "position_count": db.query(Position).filter(Position.person_name == name).count(),
            "token_status": token_manager.get_token_status(db, name),
        })
    return out


def get_person_detail(db: Session, person_name: str) -> Dict[str, Any]:
    person = _get_active(db, person_name)
    if person is None:
        raise ValueError("Person not found")
    accounts = db.query(Account).filter(Account.person_name == person_name).order_by(Account.account_id).all()
    return {
        **_dump(person),
        "accounts": [AccountOut.model_validate(a).model_dump(mode="json") for a in accounts],
        "token_status": token_manager.get_token_status(db, person_name),
        "statistics": {
            "position_count": db.query(Position).filter(Position.person_name == person_name).count(),
            "activity_count": db.query(Activity).filter(Activity.person_name == person_name).count(),
            "account_count": len(accounts),
        },
    }


def create_person(
    db: Session,
    person_name: str,
    refresh_token: str,
    *,
    display_name: Optional[str] = None,
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> Dict[str, Any]:
    if _get_active(db, person_name) is not None:
        raise ValueError("Person already exists")

    token_manager.setup_person_token(
        db,
        person_name,
        refresh_token,
        display_name=display_name or person_name,
        email=email,
        phone_number=phone_number,
        client=client,
    )
    person = db.query(Person).filter(Person.person_name == person_name).first()
    logger.info("Person created: %s", person_name)
    return _dump(person)


def update_person(db: Session, person_name: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    person = db.query(Person).filter(Person.person_name == person_name).first()
    if person is None:
        raise ValueError("Person not found")

    new_name = changes.pop("person_name", None)
    if new_name and new_name != person_name:
        if db.query(Person).filter(Person.person_name == new_name).first() is not None:
            raise ValueError(f"Person {new_name} already exists")
        for model in _PERSON_SCOPED:
            db.query(model).filter(model.person_name == person_name).update(
                {model.person_name: new_name}, synchronize_session="fetch"
            )
        person.person_name = new_name
        logger.info("Person renamed: %s -> %s", person_name, new_name)

    preferences = changes.pop("preferences", None)
    if preferences is not None:
        merged = dict(person.preferences or {})
        for key, value in preferences.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        person.preferences = merged

    for field, value in changes.items():
        if value is not None:
            setattr(person, field, value)
    db.commit()
    db.refresh(person)
    return _dump(person)


def delete_person(db: Session, person_name: str, *, permanent: bool = False) -> str:
    person = db.query(Person).filter(Person.person_name == person_name).first()
    if person is None:
        raise ValueError("Person not found")

    if not permanent:
        token_manager.remove_person(db, person_name)
        return "Person deactivated successfully"

    for model in _PERSON_SCOPED:
        db.query(model).filter(model.person_name == person_name).delete(synchronize_session="fetch")
    db.delete(person)
    db.commit()
    logger.info("Person permanently deleted: %s", person_name)
    return "Person and all related data permanently deleted"


def get_person_statistics(db: Session, person_name: str) -> Dict[str, Any]:
    person = _get_active(db, person_name)
    if person is None:
        raise ValueError("Person not found")

    positions = db.query(Position).filter(Position.person_name == person_name).all()
    investment = fsum(p.total_cost or 0.0 for p in positions)
    value = fsum(p.current_market_value or 0.0 for p in positions)
    dividends = fsum(to_float(p.dividends.get("total_received")) for p in positions)
    account_count = db.query(Account).filter(Account.person_name == person_name).count()
    activities = db.query(Activity).filter(Activity.person_name == person_name)
    return {
        "accounts": {"total": account_count},
        "positions": {
            "total": len(positions),
            "with_dividends": sum(1 for p in positions if to_float(p.dividends.get("annual_dividend")) > 0),
        },
        "activities": {
            "total": activities.count(),
            "dividends": activities.filter(Activity.type == "Dividend").count(),
        },
        "portfolio": {
            "total_investment": investment,
            "current_value": value,
            "total_dividends": dividends,
            "unrealized_gain": value - investment,
            "total_return": value - investment + dividends,
        },
        "last_sync": isoformat(person.last_successful_sync),
        "token_status": token_manager.get_token_status(db, person_name),
    }
