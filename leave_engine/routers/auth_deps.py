"""
Actor resolution for FastAPI endpoints.

Bearer tokens are issued by the identity provider. The claims become an
explicit Actor that is handed to every service call; nothing in the engine
reads identity from ambient state.
"""
import logging
from typing import Callable, List, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from leave_engine.core.exceptions import AuthenticationError, NotAuthorizedError
from leave_engine.core.security import decode_access_token
from leave_engine.database import get_db
from leave_engine.models.employee import Employee
from leave_engine.services.authorization import Actor, UserRole

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Actor:
    """
    Validates the bearer token and returns the acting employee.
    """
    if credentials is None:
        raise AuthenticationError("Missing bearer token")

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        logger.warning("Authentication failed: Invalid token")
        raise AuthenticationError()
    if payload.get("error") == "TOKEN_EXPIRED":
        logger.info("Authentication failed: Token expired")
        raise AuthenticationError("TOKEN_EXPIRED")

    subject = payload.get("sub")
    try:
        employee_id = int(subject)
    except (TypeError, ValueError):
        logger.warning("Authentication failed: Missing or malformed subject in token")
        raise AuthenticationError("Missing subject in token")

    employee = db.get(Employee, employee_id)
    if employee is None:
        logger.warning(f"Authentication failed: Employee {employee_id} not found")
        raise AuthenticationError("Employee not found")
    if not employee.is_active:
        logger.warning(f"Authentication failed: Employee {employee_id} is inactive")
        raise NotAuthorizedError("Employee is inactive")

    roles = payload.get("roles") or [UserRole.EMPLOYEE.value]
    if isinstance(roles, str):
        roles = [roles]
    return Actor(
        employee_id=employee.id,
        company_id=payload.get("company_id", employee.company_id),
        roles=frozenset(roles),
    )


def require_role(allowed_roles: List[UserRole]) -> Callable:
    """
    Dependency factory that checks if the actor holds one of the allowed roles.

    Usage:
        @router.post("/balances/adjust")
        def adjust(actor: Actor = Depends(require_role([UserRole.HR_ADMIN]))):
            ...
    """
    def role_checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.has_role(*allowed_roles):
            raise NotAuthorizedError(
                f"Access denied. Required roles: {[r.value for r in allowed_roles]}"
            )
        return actor
    return role_checker


def require_hr() -> Callable:
    """Shorthand for requiring any HR role."""
    return require_role([UserRole.SUPER_ADMIN, UserRole.HR_ADMIN, UserRole.HR_MANAGER])
