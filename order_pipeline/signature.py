"""HMAC verification of payment gateway confirmations.

Both checks are pure and never raise: a missing or malformed input is
simply an invalid signature.
"""

import hashlib
import hmac


def sign_payment(order_reference: str, payment_reference: str, secret: str) -> str:
    message = f"{order_reference}|{payment_reference}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_reference, payment_reference, signature, secret) -> bool:
    if not all(isinstance(v, str) and v for v in (order_reference, payment_reference, signature, secret)):
        return False
    expected = sign_payment(order_reference, payment_reference, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def sign_webhook(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body, signature, secret) -> bool:
    if not isinstance(raw_body, (bytes, bytearray)):
        return False
    if not (isinstance(signature, str) and signature and isinstance(secret, str) and secret):
        return False
    expected = sign_webhook(bytes(raw_body), secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
