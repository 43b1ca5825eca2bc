"""
Authentication utilities

Sessions are issued elsewhere; this only verifies the bearer JWT and loads
the user the settlement engine acts for.

The engine expects a `users` collection owned by that session service:
- `id`: string user id, equal to the JWT `sub` claim; it is the `user_id`
  on wallets, tickets, plays and payment attempts
- `is_admin`: optional boolean, true for operators allowed on admin routes

Any other fields are passed through untouched (`password` is never loaded).
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import os

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'ticket-settlement-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify JWT token and return current user"""
    from database import db

    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token")

        user = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
        if not user:
            raise HTTPException(status_code=401, detail="User not found")

        return user
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_admin_user(user: dict = Depends(get_current_user)):
    """Check if user is admin"""
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
