"""Internal service tokens (HS256) for calls into the ledger"""
import time
from typing import Dict, Optional

import jwt

from common.settings import Settings, settings as default_settings

ALGO = "HS256"
LEDGER_AUDIENCE = "ledger"
BEARER_PREFIX = "Bearer "

def mint_internal_jwt(aud: str = LEDGER_AUDIENCE, claims: Optional[Dict] = None, subject: str = "order-service",
                      settings: Optional[Settings] = None) -> str:
    cfg = settings or default_settings
    issued = int(time.time())
    payload = {
        "iss": cfg.jwt_issuer,
        "sub": subject,
        "aud": aud,
        "iat": issued,
        "exp": issued + cfg.internal_jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, cfg.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: str = LEDGER_AUDIENCE, settings: Optional[Settings] = None) -> Dict:
    """Decode and check signature, issuer, audience and expiry; raises jwt.PyJWTError"""
    cfg = settings or default_settings
    return jwt.decode(
        token,
        cfg.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        issuer=cfg.jwt_issuer,
        options={"require": ["exp", "iat", "iss", "aud"]},
    )

def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    return authorization[len(BEARER_PREFIX):].strip() or None
