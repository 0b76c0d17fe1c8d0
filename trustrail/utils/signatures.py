"""Request signing for the payment provider and for business webhooks"""

import hashlib
import hmac
from typing import Optional

from trustrail.config import settings


def provider_signature(request_ref: str, api_key: Optional[str] = None) -> str:
    """MD5 hex of `api_key;request_ref`"""
    key = api_key if api_key is not None else settings.provider_api_key
    return hashlib.md5(f"{key};{request_ref}".encode("utf-8")).hexdigest()


def verify_provider_signature(request_ref: str, received: str, api_key: Optional[str] = None) -> bool:
    if not request_ref or not received:
        return False
    return hmac.compare_digest(provider_signature(request_ref, api_key), received.lower())


def business_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex of the exact JSON body sent to the business"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_business_signature(body: bytes, secret: str, received: str) -> bool:
    return hmac.compare_digest(business_signature(body, secret), received)
