"""
Two-phase confirmation for destructive actions.

The first call describes the effect and hands back a signed token; the caller
re-submits the token to execute. Nothing is stored server-side: the token
carries the action's parameters and is signed with the action as salt, so a
token issued for one action never verifies for another.
"""
import json
import time
from typing import Any, Callable, Dict, Optional

from itsdangerous import BadSignature, SignatureExpired, TimestampSigner, URLSafeTimedSerializer

from config import settings
from utils.errors import ValidationError


def _normalize(params: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(params, sort_keys=True, default=str))


class ConfirmationTokens:
    def __init__(self, secret: Optional[str] = None, ttl_seconds: Optional[int] = None,
                 clock: Callable[[], float] = time.time):
        self.secret = secret or settings.CONFIRMATION_SECRET
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.CONFIRMATION_TTL_SECONDS
        self.clock = clock

        class ClockedSigner(TimestampSigner):
            def get_timestamp(self) -> int:
                return int(clock())

        self._signer = ClockedSigner

    def _serializer(self, action: str) -> URLSafeTimedSerializer:
        return URLSafeTimedSerializer(self.secret, salt=action, signer=self._signer)

    def issue(self, action: str, params: Dict[str, Any], effect: str) -> Dict[str, Any]:
        return {
            "confirmation_required": True,
            "action": action,
            "effect": effect,
            "token": self._serializer(action).dumps({"p": _normalize(params)}),
            "expires_at": int(self.clock()) + self.ttl_seconds,
        }

    def redeem(self, token: str, action: str, params: Dict[str, Any]) -> None:
        """Raise ValidationError unless the token was issued for exactly this action."""
        if not isinstance(token, str) or not token:
            raise ValidationError("malformed confirmation token", field="token")
        try:
            payload = self._serializer(action).loads(token, max_age=self.ttl_seconds)
        except SignatureExpired:
            raise ValidationError("confirmation token expired", field="token")
        except BadSignature:
            raise ValidationError("invalid confirmation token", field="token")

        if not isinstance(payload, dict) or payload.get("p") != _normalize(params):
            raise ValidationError("confirmation token does not match this action", field="token")

    def check(self, token: Optional[str], action: str, params: Dict[str, Any], effect: str) -> Optional[Dict[str, Any]]:
        """
        First phase when `token` is empty: return the challenge to send back.
        Second phase: redeem the token and return None so the caller proceeds.
        """
        if not token:
            return self.issue(action, params, effect)
        self.redeem(token, action, params)
        return None
