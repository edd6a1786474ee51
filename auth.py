import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

from database import db, require_db, serialize_doc, to_object_id, create_document, utcnow
from schemas import User as UserSchema

logger = logging.getLogger(__name__)

# JWT Config
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days

# Addresses that are made admins when their user record is created
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

router = APIRouter(prefix="/auth", tags=["auth"], dependencies=[Depends(require_db)])


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        logger.warning("Rejected invalid or expired token")
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def resolve_role(email: str) -> str:
    return "admin" if email.lower() in ADMIN_EMAILS else "user"


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    """The one authorization predicate every admin check goes through."""
    return bool(user) and user.get("role") == "admin"


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(doc)
    # Never send password hash
    user.pop("password_hash", None)
    return user


# Auth models
class RegisterInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


# Dependencies

def _user_from_header(authorization: Optional[str]) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return public_user(user)


def get_current_user(authorization: Optional[str] = Header(default=None)):
    return _user_from_header(authorization)


def get_optional_user(authorization: Optional[str] = Header(default=None)):
    if not authorization:
        return None
    try:
        return _user_from_header(authorization)
    except HTTPException:
        return None


def require_admin(current_user: dict = Depends(get_current_user)):
    if not is_admin(current_user):
        logger.warning("Admin access denied for %s", current_user.get("email"))
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user


# Routes
@router.post("/register", response_model=TokenResponse)
def register(payload: RegisterInput):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already registered")
    user_model = UserSchema(
        email=email,
        password_hash=hash_password(payload.password),
        role=resolve_role(email),
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    created = create_document(db["user"], user_model.model_dump())
    logger.info("Created user %s with role %s", email, user_model.role)
    token = create_access_token({"sub": created["id"]})
    created.pop("password_hash", None)
    return TokenResponse(access_token=token, user=created)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginInput):
    email = payload.email.lower()
    user = db["user"].find_one({"email": email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    if user.get("role") not in ("user", "admin"):
        # Records created outside this service get their role on first sign-in
        role = resolve_role(email)
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"role": role, "updated_at": utcnow()}})
        user["role"] = role
        logger.info("Assigned role %s to %s on first sign-in", role, email)
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token, user=public_user(user))


@router.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return current_user


@router.patch("/me")
def update_me(data: ProfileUpdate, current_user: dict = Depends(get_current_user)):
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    update_dict["updated_at"] = utcnow()
    obj_id = to_object_id(current_user["id"], "user")
    db["user"].update_one({"_id": obj_id}, {"$set": update_dict})
    return public_user(db["user"].find_one({"_id": obj_id}))


@router.delete("/me")
def delete_me(current_user: dict = Depends(get_current_user)):
    db["user"].delete_one({"_id": to_object_id(current_user["id"], "user")})
    db["cart"].delete_one({"user_id": current_user["id"]})
    logger.info("User %s deleted their account", current_user["email"])
    return {"ok": True}


@router.get("/admin-check")
def admin_check(current_user: Optional[dict] = Depends(get_optional_user)):
    admin = is_admin(current_user)
    return {
        "is_authenticated": current_user is not None,
        "is_admin": admin,
        "is_authorized": admin,
    }
