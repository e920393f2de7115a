from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from database import get_db
from models.account import Account
from models.person import Person
from schemas.account import AccountOut, AccountUpdate
from services.portfolio.aggregator import get_account_dropdown_options

router = APIRouter()


def _dump(account: Account) -> dict:
    return AccountOut.model_validate(account).model_dump(mode="json")


@router.get("")
def list_accounts(person_name: Optional[str] = Query(None), db: Session = Depends(get_db)):
    query = db.query(Account)
    if person_name:
        query = query.filter(Account.person_name == person_name)
    accounts = query.order_by(Account.person_name, Account.type).all()
    return {"success": True, "data": [_dump(a) for a in accounts]}


@router.get("/by-person")
def accounts_by_person(db: Session = Depends(get_db)):
    result = {}
    for person in db.query(Person).filter(Person.is_active.is_(True)).order_by(Person.person_name).all():
        accounts = (
            db.query(Account)
            .filter(Account.person_name == person.person_name)
            .order_by(Account.type, Account.account_id)
            .all()
        )
        result[person.person_name] = {
            "person": {
                "person_name": person.person_name,
                "display_name": person.display_name,
                "has_valid_token": person.has_valid_token,
                "last_successful_sync": person.last_successful_sync,
            },
            "accounts": [{**_dump(a), "display_name": a.display_name or f"{a.type} - {a.account_id}"} for a in accounts],
        }
    return {"success": True, "data": result}


@router.get("/dropdown-options")
def dropdown_options(db: Session = Depends(get_db)):
    return {"success": True, "data": get_account_dropdown_options(db)}


@router.get("/summary")
def accounts_summary(db: Session = Depends(get_db)):
    total_accounts = db.query(Account).count()
    total_persons = db.query(Person).filter(Person.is_active.is_(True)).count()
    by_type = (
        db.query(Account.type, func.count(Account.id), func.coalesce(func.sum(Account.current_value), 0.0))
        .group_by(Account.type)
        .all()
    )
    by_person = (
        db.query(
            Account.person_name,
            func.count(Account.id),
            func.coalesce(func.sum(Account.current_value), 0.0),
            func.coalesce(func.sum(Account.total_investment), 0.0),
        )
        .group_by(Account.person_name)
        .all()
    )
    return {
        "success": True,
        "data": {
            "summary": {
                "total_accounts": total_accounts,
                "total_persons": total_persons,
                "average_accounts_per_person": total_accounts / total_persons if total_persons else 0,
            },
            "by_type": [{"type": t, "count": c, "total_value": float(v)} for t, c, v in by_type],
            "by_person": [
                {"person_name": p, "count": c, "total_value": float(v), "total_investment": float(i)}
                for p, c, v, i in by_person
            ],
        },
    }


@router.get("/summary/{account_id}")
def account_summary(account_id: str, db: Session = Depends(get_db)):
    account = db.query(Account).filter(Account.account_id == account_id).first()
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return {
        "success": True,
        "data": {
            **_dump(account),
            "label": account.label(),
            "cash_balance": account.cash_balance(),
            "return_percent": (account.open_pnl / account.total_investment * 100) if account.total_investment else 0,
        },
    }


@router.put("/{account_id}")
def update_account(account_id: str, payload: AccountUpdate, db: Session = Depends(get_db)):
    account = db.query(Account).filter(Account.account_id == account_id).first()
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(account, field, value)
    db.commit()
    db.refresh(account)
    return {"success": True, "data": _dump(account), "message": "Account updated successfully"}


@router.get("/{account_id}")
def get_account(account_id: str, db: Session = Depends(get_db)):
    account = db.query(Account).filter(Account.account_id == account_id).first()
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return {"success": True, "data": _dump(account)}
