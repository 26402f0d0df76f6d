from typing import Dict, Optional

import jwt
from fastapi import Request

from core.config import cfg


SECRET_KEY = str(cfg.get("secret", "storefront-dev-secret"))
ALGORITHM = str(cfg.get("auth.algorithm", "HS256"))


def parse_bearer_user(authorization: str) -> Dict[str, str]:
    """解析 Bearer token，失败返回空 dict（按游客处理）。"""
    text = str(authorization or "").strip()
    if not text.lower().startswith("bearer "):
        return {}
    token = text[7:].strip()
    if not token:
        return {}
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return {}
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        return {}
    return {
        "user_id": user_id[:64],
        "role": str(payload.get("role") or "user"),
    }


def create_access_token(user_id: str, role: str = "user") -> str:
    return jwt.encode({"sub": str(user_id), "role": role}, SECRET_KEY, algorithm=ALGORITHM)


async def get_optional_user(request: Request) -> Dict[str, str]:
    return parse_bearer_user(request.headers.get("Authorization", ""))


def get_user_id(current_user: Optional[Dict[str, str]]) -> Optional[str]:
    return (current_user or {}).get("user_id") or None
