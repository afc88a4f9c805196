from fastapi import Header, HTTPException
from jose import JWTError, jwt

from ticketpay.config import jwt_secret


def verify_token(authorization: str = Header(None)):
    """Bearer JWT signed with JWT_SECRET (HS256); returns the claims."""
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer" or not jwt_secret():
            raise ValueError("unsupported scheme")
        return jwt.decode(token, jwt_secret(), algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
