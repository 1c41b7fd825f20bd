from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import List

from ..core.config import settings
from ..core.database import get_db, get_redis
from ..core.security import (
    security, verify_token, AuthenticationError,
    AuthorizationError, UserRole, TokenPayload
)
from ..models.user import User
from ..services.actors import Actor
from ..services.notification_service import Notifier
from ..services.payment_gateway import PaymentGateway
from ..services.video_service import VideoClient

async def get_current_user_token(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """Extract and verify JWT token from Authorization header."""
    token_payload = verify_token(credentials.credentials)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")
    
    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")
    
    return token_payload

def get_current_user(
    token_payload: TokenPayload = Depends(get_current_user_token),
    db: Session = Depends(get_db)
) -> User:
    """Get current authenticated user from database."""
    if not token_payload.sub:
        raise AuthenticationError("Invalid token payload")
    
    user = db.get(User, token_payload.sub)
    if not user:
        raise AuthenticationError("User not found")
    
    if not user.is_active:
        raise AuthenticationError("User account is deactivated")
    
    return user

# Role-based access control dependencies
def require_role(allowed_roles: List[UserRole]):
    """Create a dependency that requires specific user roles."""
    def role_checker(
        current_user: User = Depends(get_current_user)
    ) -> User:
        if current_user.role not in allowed_roles:
            raise AuthorizationError(
                f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
            )
        return current_user
    
    return role_checker

def get_actor(current_user: User = Depends(get_current_user)) -> Actor:
    """The authenticated user as seen by the booking services."""
    return Actor(
        user_id=current_user.id,
        role=current_user.role,
        doctor_id=current_user.doctor_id,
    )

def get_doctor_actor(
    current_user: User = Depends(require_role([UserRole.DOCTOR]))
) -> Actor:
    """Require a doctor account with a doctor profile."""
    if current_user.doctor_id is None:
        raise AuthorizationError("Doctor profile not found")
    return Actor(
        user_id=current_user.id,
        role=current_user.role,
        doctor_id=current_user.doctor_id,
    )

# External collaborators, built once at startup
def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway

def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier

def get_video_client(request: Request) -> VideoClient:
    return request.app.state.video_client

# Rate limiting dependency
def rate_limit(scope: str, max_requests: int, window_seconds: int = 3600):
    """Fixed-window rate limit per client IP, counted in Redis."""
    def checker(
        request: Request,
        redis_client = Depends(get_redis)
    ) -> None:
        client_ip = request.client.host if request.client else "unknown"
        key = f"rate_limit:{scope}:{client_ip}"

        current_requests = redis_client.incr(key)
        if current_requests == 1:
            redis_client.expire(key, window_seconds)

        if current_requests > max_requests:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later."
            )

    return checker

rate_limit_check = rate_limit("auth", 10)
booking_rate_limit = rate_limit("booking", settings.BOOKING_RATE_LIMIT_PER_HOUR)
