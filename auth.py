from enum import Enum
from typing import Optional
from pydantic import BaseModel
from fastapi import HTTPException, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config import settings
from services.custody import Caller

security = HTTPBearer(auto_error=False)

class UserRole(str, Enum):
    ADMIN = "admin"
    FARMER = "farmer"
    DISTRIBUTOR = "distributor"
    RETAILER = "retailer"
    CONSUMER = "consumer"
    VERIFIER = "verifier"

PRIVILEGED_ROLES = (UserRole.ADMIN, UserRole.VERIFIER)

class User(BaseModel):
    id: str
    username: str
    role: UserRole
    wallet_address: Optional[str] = None  # Privileged users act through the relayer

    def as_caller(self) -> Caller:
        """Identity the custody rules see for this user."""
        if self.role in PRIVILEGED_ROLES:
            return Caller.verifier(self.wallet_address)
        return Caller(self.wallet_address)

class AuthService:
    def __init__(self):
        # Demo users - in production, use proper authentication
        self.demo_users = {
            "admin": User(id="1", username="admin", role=UserRole.ADMIN),
            "farmer": User(id="2", username="farmer", role=UserRole.FARMER,
                           wallet_address=settings.DEFAULT_FARMER_ADDRESS),
            "distributor": User(id="3", username="distributor", role=UserRole.DISTRIBUTOR,
                                wallet_address=settings.DEFAULT_DISTRIBUTOR_ADDRESS),
            "retailer": User(id="4", username="retailer", role=UserRole.RETAILER,
                             wallet_address=settings.DEFAULT_RETAILER_ADDRESS),
            "consumer": User(id="5", username="consumer", role=UserRole.CONSUMER,
                             wallet_address=settings.DEFAULT_CONSUMER_ADDRESS),
            "verifier": User(id="6", username="verifier", role=UserRole.VERIFIER),
        }

    def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """Authenticate user with username/password (demo implementation)"""
        if username in self.demo_users and password == "demo123":
            return self.demo_users[username]
        return None

    def get_user_by_token(self, token: str) -> Optional[User]:
        # In production, decode JWT token
        return self.demo_users.get(token)

auth_service = AuthService()

def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[User]:
    """Get current user from token (optional for public endpoints)"""
    if not credentials:
        return None
    return auth_service.get_user_by_token(credentials.credentials)

def require_auth(credentials: HTTPAuthorizationCredentials = Depends(security)) -> User:
    """Require authentication"""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )

    user = auth_service.get_user_by_token(credentials.credentials)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )

    return user

def require_role(allowed_roles: list[UserRole]):
    """Require specific role(s)"""
    def role_checker(user: User = Depends(require_auth)) -> User:
        if user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
            )
        return user
    return role_checker

# Role-specific dependencies
require_admin = require_role([UserRole.ADMIN])
require_verifier = require_role(list(PRIVILEGED_ROLES))
require_supply_chain_roles = require_role([
    UserRole.ADMIN,
    UserRole.FARMER,
    UserRole.DISTRIBUTOR,
    UserRole.RETAILER,
    UserRole.VERIFIER,
])
