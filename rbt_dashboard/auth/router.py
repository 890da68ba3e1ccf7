import secrets
import uuid
import smtplib
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..db import get_db
from ..config import settings
from ..logging import structlog
from ..models.models import User, EmailVerification
from ..ratelimit import limiter
from ..schemas.auth import (
    SignupRequest,
    VerifyEmailRequest,
    ResendVerificationRequest,
    LoginRequest,
    RefreshRequest,
    TokenResponse,
    MeResponse,
)
from ..services.access import Action, Role, bootstrap_role, can, is_super_admin_identity
from ..services.ageing import as_utc
from .security import (
    get_password_hash,
    verify_password,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_token_payload,
    get_current_user,
    is_revoked,
    revoke_token,
    actor_for,
)


router = APIRouter(prefix="/auth", tags=["auth"])
logger = structlog.get_logger(__name__)

INVALID_LOGIN = "Invalid email or password."
UNVERIFIED_LOGIN = "Please verify your email before logging in."


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def email_domain_allowed(email: str) -> bool:
    allowed = settings.allowed_domain_list()
    if not allowed:
        return True
    return email.rsplit("@", 1)[-1] in allowed


def _issue_verification(db: Session, user: User) -> str:
    token = secrets.token_urlsafe(32)
    db.add(EmailVerification(
        user_id=user.id,
        token=token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=settings.verification_ttl_seconds),
    ))
    db.commit()
    return token


def send_verification_email(email: str, token: str) -> None:
    if not (settings.smtp_host and settings.mail_from):
        logger.info("verification_email_skipped", email=email, reason="smtp not configured")
        return
    try:
        msg = EmailMessage()
        msg["Subject"] = f"Verify your {settings.app_name} account"
        msg["From"] = settings.mail_from
        msg["To"] = email
        link = f"{settings.public_base_url}/verify-email?token={token}"
        msg.set_content(f"Click to verify your email: {link}")
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as s:
            if settings.smtp_tls:
                s.starttls()
            if settings.smtp_username and settings.smtp_password:
                s.login(settings.smtp_username, settings.smtp_password)
            s.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("verification_email_failed", email=email, error=str(e))


def ensure_user_profile(db: Session, user: User) -> User:
    """Called on every successful sign-in. The configured super-admin identity is always promoted."""
    if is_super_admin_identity(user.email) and user.role != Role.super_admin.value:
        logger.info("super_admin_promoted", email=user.email, previous_role=user.role)
        user.role = Role.super_admin.value
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(user)
    return user


def _subject_uuid(claims: dict) -> uuid.UUID:
    try:
        return uuid.UUID(str(claims.get("sub")))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid refresh token")


def _tokens_for(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(str(user.id), role=user.role),
        refresh_token=create_refresh_token(str(user.id)),
    )


@router.post("/signup", status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, db: Session = Depends(get_db)):
    email = normalize_email(payload.email)
    if not email_domain_allowed(email):
        raise HTTPException(status_code=403, detail="Email domain not allowed")
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(
        email=email,
        password_hash=get_password_hash(payload.password),
        # Only consulted here, when the profile is first created
        role=bootstrap_role(email).value,
        email_verified=not settings.enforce_verified_email,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    if not user.email_verified:
        send_verification_email(email, _issue_verification(db, user))
    logger.info("user_signed_up", email=email, role=user.role)
    return {"id": str(user.id), "email": user.email, "email_verified": user.email_verified}


@router.post("/verify-email")
def verify_email(payload: VerifyEmailRequest, db: Session = Depends(get_db)):
    ev: Optional[EmailVerification] = db.query(EmailVerification).filter(EmailVerification.token == payload.token).first()
    now_utc = datetime.now(timezone.utc)
    if not ev or ev.used_at is not None or as_utc(ev.expires_at) < now_utc:
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    user = db.query(User).filter(User.id == ev.user_id).first()
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    ev.used_at = now_utc
    user.email_verified = True
    db.commit()
    return {"verified": True}


@router.post("/resend-verification")
def resend_verification(payload: ResendVerificationRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == normalize_email(payload.email)).first()
    # Same answer whether or not the address exists
    if user and not user.email_verified:
        send_verification_email(user.email, _issue_verification(db, user))
    return {"sent": True}


@router.post("/login", response_model=TokenResponse)
@limiter.limit(settings.login_rate_limit)
def login(request: Request, payload: LoginRequest, db: Session = Depends(get_db)):
    email = normalize_email(payload.email)
    user = db.query(User).filter(User.email == email).first()
    if not user or not user.is_active or not verify_password(payload.password, user.password_hash):
        logger.info("login_failed", email=email)
        raise HTTPException(status_code=401, detail=INVALID_LOGIN)
    if not email_domain_allowed(email):
        raise HTTPException(status_code=403, detail="Email domain not allowed")
    if settings.enforce_verified_email and not user.email_verified:
        raise HTTPException(status_code=403, detail=UNVERIFIED_LOGIN)
    user = ensure_user_profile(db, user)
    return _tokens_for(user)


@router.post("/refresh", response_model=TokenResponse)
def refresh(payload: RefreshRequest, db: Session = Depends(get_db)):
    claims = decode_token(payload.refresh_token)
    if claims.get("type") != "refresh" or is_revoked(db, claims.get("jti")):
        raise HTTPException(status_code=400, detail="Invalid refresh token")
    user = db.query(User).filter(User.id == _subject_uuid(claims)).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=400, detail="Invalid refresh token")
    # Refresh tokens are single use
    revoke_token(db, claims)
    return _tokens_for(user)


@router.post("/logout")
def logout(
    body: Optional[RefreshRequest] = None,
    claims: dict = Depends(get_token_payload),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    revoke_token(db, claims)
    if body is not None:
        refresh_claims = decode_token(body.refresh_token)
        if refresh_claims.get("sub") == str(user.id):
            revoke_token(db, refresh_claims)
    logger.info("user_logged_out", email=user.email)
    return {"ok": True}


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)):
    actor = actor_for(user)
    return MeResponse(
        id=str(user.id),
        email=user.email,
        role=actor.role.value,
        email_verified=bool(user.email_verified),
        first_name=user.first_name,
        last_name=user.last_name,
        capabilities=[a.value for a in Action if can(actor, a)],
    )
