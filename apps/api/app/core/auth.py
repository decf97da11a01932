from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

WILDCARD_CAPABILITY = "ALL"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    permissions: list[str] = field(default_factory=list)

    def has_capability(self, capability: str) -> bool:
        grants = set(self.permissions)
        return WILDCARD_CAPABILITY in grants or capability in grants


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    permissions = payload.get("permissions", [])
    if not isinstance(permissions, list):
        permissions = []
    return AuthUser(sub=subject, roles=[str(role) for role in roles], permissions=[str(item) for item in permissions])
