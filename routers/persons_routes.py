# routers/persons_routes.py
from __future__ import annotations

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from database import get_db
from routers.dependencies import get_http_client
from schemas.person import PersonCreate, PersonUpdate, TokenUpdate, TokenValidate
from services import person_service
from services.questrade import token_manager

router = APIRouter()


@router.get("")
def get_persons(db: Session = Depends(get_db)):
    return {"success": True, "data": person_service.list_persons(db)}


@router.post("/validate-token")
def validate_token(payload: TokenValidate, http: httpx.Client = Depends(get_http_client)):
    result = token_manager.validate_refresh_token(payload.refresh_token, client=http)
    return {"success": result["valid"], "data": result}


@router.get("/{person_name}")
def get_person(person_name: str, db: Session = Depends(get_db)):
    try:
        return {"success": True, "data": person_service.get_person_detail(db, person_name)}
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("", status_code=status.HTTP_201_CREATED)
def create_person(
    payload: PersonCreate,
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
):
    try:
        person = person_service.create_person(
            db,
            payload.person_name,
            payload.refresh_token,
            display_name=payload.display_name,
            email=payload.email,
            phone_number=payload.phone_number,
            client=http,
        )
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"success": True, "data": person, "message": "Person created successfully"}


@router.put("/{person_name}")
def update_person(person_name: str, payload: PersonUpdate, db: Session = Depends(get_db)):
    try:
        person = person_service.update_person(db, person_name, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        status_code = 404 if "not found" in str(exc).lower() else 409
        raise HTTPException(status_code=status_code, detail=str(exc))
    return {"success": True, "data": person, "message": "Person updated successfully"}


@router.delete("/{person_name}")
def delete_person(person_name: str, permanent: bool = Query(False), db: Session = Depends(get_db)):
    try:
        message = person_service.delete_person(db, person_name, permanent=permanent)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"success": True, "message": message}


@router.post("/{person_name}/token")
def update_token(
    person_name: str,
    payload: TokenUpdate,
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
):
    result = token_manager.setup_person_token(db, person_name, payload.refresh_token, client=http)
    return {"success": True, "data": result, "message": "Token updated successfully"}


@router.get("/{person_name}/token-status")
def token_status(person_name: str, db: Session = Depends(get_db)):
    return {"success": True, "data": token_manager.get_token_status(db, person_name)}


@router.post("/{person_name}/test-connection")
def test_connection(
    person_name: str,
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
):
    result = token_manager.test_connection(db, person_name, client=http)
    return {"success": result["success"], "data": result}


@router.get("/{person_name}/statistics")
def person_statistics(person_name: str, db: Session = Depends(get_db)):
    try:
        return {"success": True, "data": person_service.get_person_statistics(db, person_name)}
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
