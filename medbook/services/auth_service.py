from sqlalchemy.orm import Session
from fastapi import HTTPException, status
import logging

from ..models.user import User
from ..models.doctor import Doctor
from ..core.clock import utcnow
from ..core.security import (
    verify_password, get_password_hash, issue_token, UserRole
)
from ..schemas.auth import UserLogin, UserRegister, TokenResponse, UserResponse

logger = logging.getLogger(__name__)

class AuthService:
    def __init__(self, db: Session):
        self.db = db
    
    def register_user(self, user_data: UserRegister) -> User:
        """Register a new user, with a doctor profile for doctor accounts."""
        if user_data.role == UserRole.ADMIN:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin accounts cannot be self-registered"
            )

        existing_user = self.db.query(User).filter(
            User.email == user_data.email
        ).first()
        
        if existing_user:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Email already registered"
            )

        if user_data.role == UserRole.DOCTOR and (
            not user_data.specialization or user_data.consultation_fee is None
        ):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Doctors must provide a specialization and consultation fee"
            )
        
        new_user = User(
            email=user_data.email,
            password_hash=get_password_hash(user_data.password),
            role=user_data.role,
            first_name=user_data.first_name,
            last_name=user_data.last_name,
            phone_number=user_data.phone_number,
            is_active=True,
            is_verified=False
        )
        self.db.add(new_user)

        if user_data.role == UserRole.DOCTOR:
            # Doctors stay unverified, and unbookable, until an admin reviews them
            self.db.flush()
            self.db.add(Doctor(
                user_id=new_user.id,
                specialization=user_data.specialization,
                consultation_fee=user_data.consultation_fee,
                video_consultation_fee=user_data.video_consultation_fee,
            ))

        self.db.commit()
        self.db.refresh(new_user)

        logger.info(f"Registered {new_user.role.value} account {new_user.id}")
        return new_user
    
    def authenticate_user(self, login_data: UserLogin) -> TokenResponse:
        """Authenticate user and return an access token."""
        user = self.db.query(User).filter(
            User.email == login_data.email
        ).first()
        
        if not user or not verify_password(login_data.password, user.password_hash):
            logger.info(f"Failed login for {login_data.email}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid email or password"
            )
        
        if not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Account is deactivated"
            )
        
        user.last_login = utcnow()
        self.db.commit()

        token = issue_token(user.id, user.email, user.role)
        
        return TokenResponse(
            access_token=token.access_token,
            token_type=token.token_type,
            expires_in=token.expires_in,
            user=UserResponse.model_validate(user)
        )
