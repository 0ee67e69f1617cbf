import sys
from pathlib import Path

# Add backend directory to path for imports to work when running directly
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from database.connection import get_db
from database.models import User, ClinicStatus, UserRole
from pydantic import BaseModel, Field
from datetime import datetime, timedelta
import os
from dotenv import load_dotenv
import logging
import jwt
import bcrypt

load_dotenv()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["Authentication"])
security = HTTPBearer()

# ==================== CONFIG ====================

SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", "8"))

# ==================== PYDANTIC MODELS ====================

class CheckUserRequest(BaseModel):
    username: str = Field(..., min_length=1)

class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

class SetPasswordRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6, max_length=128)

# ==================== HELPER FUNCTIONS ====================

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

def verify_password(plain_password: str, password_hash: str) -> bool:
    """Check a password against its bcrypt hash"""
    try:
        return bcrypt.checkpw(plain_password.encode(), password_hash.encode())
    except ValueError:
        # Malformed hash stored in the database
        return False

def create_access_token(data: dict) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    expire = datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode.update({
        "exp": expire,
        "iat": datetime.utcnow(),
        "type": "access"
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def decode_token(token: str) -> dict:
    """Decode and validate JWT token"""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired"
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )

def build_token_payload(user: User) -> dict:
    clinic = user.clinic
    return {
        "user_id": user.id,
        "clinic_id": user.clinic_id,
        "username": user.username,
        "full_name": user.full_name,
        "role": user.role,
        "is_admin": bool(user.is_admin),
        "max_patients": clinic.max_patients if clinic else 0,
        "associated_patient_id": user.associated_patient_id,
    }

def serialize_user(user: User) -> dict:
    clinic = user.clinic
    return {
        "id": user.id,
        "clinic_id": user.clinic_id,
        "clinic_name": clinic.name if clinic else None,
        "username": user.username,
        "full_name": user.full_name,
        "role": user.role,
        "is_admin": bool(user.is_admin),
        "max_patients": clinic.max_patients if clinic else 0,
        "associated_patient_id": user.associated_patient_id,
    }

def login_response(user: User, db: Session) -> dict:
    user.last_login = datetime.now()
    db.commit()
    db.refresh(user)
    return {
        "message": f"Login successful for {user.username}!",
        "token": create_access_token(build_token_payload(user)),
        "user": serialize_user(user)
    }

def suspended_clinic_detail(user: User) -> dict:
    if user.is_admin:
        msg = "Your clinic is suspended. Contact support to regularize the account."
    else:
        msg = "Your clinic's access is suspended. Contact the clinic administrator."
    return {"msg": msg, "clinic_suspended": True}

# ==================== DEPENDENCIES ====================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Dependency to get current authenticated user
    Use this in protected routes: current_user: User = Depends(get_current_user)
    """
    token = credentials.credentials
    payload = decode_token(token)

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )

    user_id = payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    return user

async def verify_clinic_status(current_user: User = Depends(get_current_user)) -> User:
    """Block every clinic-scoped route while the tenant is suspended"""
    if current_user.clinic_id is None:
        return current_user

    clinic = current_user.clinic
    if clinic and clinic.status == ClinicStatus.SUSPENDED.value:
        raise HTTPException(status_code=403, detail=suspended_clinic_detail(current_user))

    return current_user

async def require_clinic_user(current_user: User = Depends(verify_clinic_status)) -> User:
    if current_user.clinic_id is None:
        raise HTTPException(status_code=403, detail="This route requires a clinic account.")
    return current_user

async def require_staff(current_user: User = Depends(require_clinic_user)) -> User:
    """Clinic therapists and admins; parents are read-only"""
    if current_user.role == UserRole.PARENT.value:
        raise HTTPException(status_code=403, detail="Access restricted to clinic staff.")
    return current_user

async def require_admin(current_user: User = Depends(require_clinic_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Access denied. Administrator privileges required.")
    return current_user

async def require_super_admin(current_user: User = Depends(get_current_user)) -> User:
    if (
        current_user.role != UserRole.SUPER_ADMIN.value
        or not current_user.is_admin
        or current_user.clinic_id is not None
    ):
        raise HTTPException(status_code=403, detail="Access denied. Super administrator privileges required.")
    return current_user

# ==================== API ENDPOINTS ====================

@router.post("/check-user", response_model=dict)
async def check_user(
    request: CheckUserRequest,
    db: Session = Depends(get_db)
):
    """First login step: tells the client whether to ask for or define a password"""
    user = db.query(User).filter(User.username == request.username.strip()).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")

    if user.password_hash is None:
        if user.is_admin:
            return {
                "action": "SET_PASSWORD",
                "user": {
                    "id": user.id,
                    "username": user.username,
                    "full_name": user.full_name
                }
            }
        raise HTTPException(status_code=403, detail="User account invalid or not configured.")

    return {"action": "REQUIRE_PASSWORD"}

@router.post("/login", response_model=dict)
async def login(
    request: LoginRequest,
    db: Session = Depends(get_db)
):
    user = db.query(User).filter(User.username == request.username.strip()).first()
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    if not user.password_hash:
        raise HTTPException(status_code=403, detail="Password not defined yet. Use the first access flow.")

    if not verify_password(request.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    if user.clinic and user.clinic.status == ClinicStatus.SUSPENDED.value:
        logger.info("Login blocked for %s: clinic %s suspended", user.username, user.clinic_id)
        raise HTTPException(status_code=403, detail=suspended_clinic_detail(user))

    return login_response(user, db)

@router.post("/set-password", response_model=dict)
async def set_password(
    request: SetPasswordRequest,
    db: Session = Depends(get_db)
):
    """Define the first password of an account created without one"""
    user = db.query(User).filter(User.username == request.username.strip()).first()
    if not user or user.password_hash is not None:
        raise HTTPException(status_code=403, detail="Action not allowed or password already set.")

    user.password_hash = hash_password(request.password)
    db.commit()
    logger.info("Password defined for user %s", user.username)

    return login_response(user, db)

@router.get("/me", response_model=dict)
async def get_me(current_user: User = Depends(get_current_user)):
    return {"user": serialize_user(current_user)}
