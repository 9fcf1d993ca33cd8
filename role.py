import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, List
from fastapi import Depends, HTTPException, Request, status, APIRouter
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field

from errors import AuditWriteError, Forbidden, ValidationError
from models_repo import COLLECTIONS, Role, User, UserStatus

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "supersecret_dev_key_change_me")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/token")
router = APIRouter()


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class TokenData(BaseModel):
    user_id: Optional[str] = None
    role: Optional[str] = None


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=8)
    role: Role
    location: Optional[str] = None


class UserOut(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    role: Role
    location: Optional[str] = None
    status: UserStatus


def public_user(user: User) -> UserOut:
    return UserOut(**user.model_dump(include=set(UserOut.model_fields)))


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def get_services(request: Request):
    return request.app.state.services


async def get_user_by_email(store, email: str) -> Optional[dict]:
    docs = await store.query(COLLECTIONS["users"], {"email": email.strip().lower()}, limit=1)
    return docs[0] if docs else None


async def authenticate_user(store, email: str, password: str) -> Optional[dict]:
    doc = await get_user_by_email(store, email)
    if doc and doc.get("hashed_password") and verify_password(password, doc["hashed_password"]):
        return doc
    return None


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    """Signed bearer token carrying the user id as ``sub`` and the role."""
    expires_at = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {"sub": user.id, "role": user.role, "exp": expires_at}
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> TokenData:
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise _unauthorized("Could not validate credentials")
    token_data = TokenData(user_id=claims.get("sub"), role=claims.get("role"))
    if not token_data.user_id or not token_data.role:
        raise _unauthorized("Could not validate credentials")
    return token_data


async def get_current_user(token: str = Depends(oauth2_scheme), services=Depends(get_services)) -> User:
    # The stored user, not the token claims, is authoritative for role and status.
    token_data = decode_token(token)
    doc = await services.store.get(COLLECTIONS["users"], token_data.user_id)
    if doc is None:
        raise _unauthorized("Could not validate credentials")
    return User(**doc)


def require_role(required_roles: List[str]):
    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in required_roles:
            raise Forbidden(f"Operation not permitted for role {current_user.role}")
        return current_user
    return role_checker


@router.post("/token", response_model=Token, tags=["users"])
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), services=Depends(get_services)):
    doc = await authenticate_user(services.store, form_data.username, form_data.password)
    if doc is None:
        raise _unauthorized("Incorrect email or password")
    return Token(access_token=create_access_token(User(**doc)))


async def register_user(services, user_in: UserCreate) -> User:
    if user_in.role == Role.ADMIN:
        raise Forbidden("Administrators are created by an operator, not by sign-up")
    email = user_in.email.strip().lower()
    if await get_user_by_email(services.store, email):
        raise ValidationError("Email is already registered")

    location = None
    if user_in.role == Role.VOLUNTEER or user_in.location:
        if not user_in.location:
            raise ValidationError("Volunteers must register with a location")
        location = services.locations.validate(user_in.location)

    user = User(
        name=user_in.name,
        email=email,
        role=user_in.role,
        location=location,
        status=UserStatus.PENDING if user_in.role == Role.VOLUNTEER else UserStatus.APPROVED,
    )
    doc = user.to_doc()
    doc["hashed_password"] = get_password_hash(user_in.password)
    await services.store.add(COLLECTIONS["users"], doc)
    try:
        await services.audit.record_user_action(user.id, "user_registered", {"role": user.role, "location": location})
    except AuditWriteError as e:
        logger.error(f"Audit write failed for registration of {user.id}: {e}")
    return user


@router.post("/users", response_model=UserOut, status_code=status.HTTP_201_CREATED, tags=["users"])
async def create_user(user_in: UserCreate, services=Depends(get_services)):
    user = await register_user(services, user_in)
    return public_user(user)


@router.get("/me", response_model=UserOut, tags=["users"])
async def read_me(current_user: User = Depends(get_current_user)):
    return public_user(current_user)
