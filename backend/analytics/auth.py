"""JWT authentication for the operator-facing queue routes."""
from __future__ import annotations

from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ("exp", "sub")
auth_scheme = HTTPBearer(auto_error=False)


def decode_operator_token(token: str, secret: str, audience: Optional[str] = None) -> Dict:
    return jwt.decode(
        token,
        secret,
        algorithms=[ALGORITHM],
        audience=audience,
        options={"require": list(REQUIRED_CLAIMS), "verify_aud": audience is not None},
    )


def verify_operator(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> Optional[Dict]:
    """Guard queue introspection; open when no admin secret is configured."""
    settings = request.app.state.settings
    if settings.admin_jwt_secret is None:
        return None

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    try:
        payload = decode_operator_token(
            credentials.credentials,
            settings.admin_jwt_secret,
            audience=settings.admin_jwt_audience,
        )
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired") from exc
    except jwt.InvalidAudienceError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid audience") from exc
    except jwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing claim") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    return payload
