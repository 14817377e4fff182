import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import ROLES, issue_session_token, require_session
from database.db import UserRecord, create_user, get_user, verify_user_credentials

router = APIRouter()

MIN_PASSWORD_LENGTH = 6


class UserRegister(BaseModel):
    email: str
    password: str
    role: str = "student"
    display_name: str | None = None
    roll_no: str | None = None


class UserLogin(BaseModel):
    email: str
    password: str


def _user_payload(user: UserRecord) -> dict:
    return {
        "id": user["id"],
        "email": user["email"],
        "role": user["role"],
        "display_name": user["display_name"],
        "roll_no": user["roll_no"],
        "face_enrolled": user["has_face"],
    }


@router.post("/auth/register")
def register(payload: UserRegister):
    email = payload.email.strip()
    password = payload.password.strip()
    role = payload.role.strip().lower()

    if not email or "@" not in email:
        raise HTTPException(status_code=400, detail="A valid email is required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters.")
    if role not in ROLES:
        raise HTTPException(status_code=400, detail="Role must be 'student' or 'professor'.")

    try:
        user = create_user(
            email=email,
            password=password,
            role=role,
            display_name=payload.display_name,
            roll_no=payload.roll_no,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email already registered.")

    return _user_payload(user)


@router.post("/auth/login")
def login(payload: UserLogin):
    email = payload.email.strip()
    password = payload.password.strip()

    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    user = verify_user_credentials(email, password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    token, claims = issue_session_token(user["id"], role=user["role"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": _user_payload(user),
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    user = get_user(session["sub"])
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user.")
    return {
        **_user_payload(user),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
