from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials
from typing import List

from ..core.security import (
    security, verify_token, AuthenticationError,
    AuthorizationError, UserRole, TokenPayload, Principal
)

async def get_current_user_token(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """Extract and verify JWT token from Authorization header."""
    token = credentials.credentials
    
    # Verify token
    token_payload = verify_token(token)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")
    
    # Check if token is access token
    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")
    
    return token_payload

async def get_current_principal(
    token_payload: TokenPayload = Depends(get_current_user_token)
) -> Principal:
    """Resolve the requester identity carried by the token."""
    if not token_payload.sub or not token_payload.role:
        raise AuthenticationError("Invalid token payload")
    
    try:
        return Principal(
            requester_id=int(token_payload.sub),
            role=UserRole(token_payload.role)
        )
    except ValueError:
        raise AuthenticationError("Invalid token payload")

# Role-based access control dependencies
def require_role(allowed_roles: List[UserRole]):
    """Create a dependency that requires specific user roles."""
    async def role_checker(
        principal: Principal = Depends(get_current_principal)
    ) -> Principal:
        if principal.role not in allowed_roles:
            raise AuthorizationError(
                f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
            )
        return principal
    
    return role_checker

# Specific role dependencies
async def get_admin_user(
    principal: Principal = Depends(require_role([UserRole.ADMIN]))
) -> Principal:
    """Require admin role."""
    return principal

async def get_staff_user(
    principal: Principal = Depends(require_role([UserRole.DOCTOR, UserRole.ADMIN]))
) -> Principal:
    """Require doctor or admin role."""
    return principal

def ensure_owner_or_staff(principal: Principal, requester_id: int) -> None:
    """Patients may only act on their own tokens and queue entries."""
    if not principal.is_staff and principal.requester_id != requester_id:
        raise AuthorizationError("You can only act on your own requests")
