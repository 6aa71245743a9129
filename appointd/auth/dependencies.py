import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from appointd.auth import jwt_handler
from appointd.models.user import Role
from appointd.services.lifecycle import Actor

security = HTTPBearer()


def actor_from_claims(payload: dict) -> Actor:
    subject = payload.get("sub")
    role = payload.get("role")
    try:
        actor_id = int(subject)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=401, detail="Invalid token subject") from exc
    if role not in {member.value for member in Role}:
        raise HTTPException(status_code=401, detail="Invalid token role")
    return Actor(actor_id=actor_id, role=role)


def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    return actor_from_claims(payload)


def require_role(actor: Actor, *roles: Role) -> None:
    if actor.role not in {role.value for role in roles}:
        raise HTTPException(status_code=403, detail="Not allowed for this role")
