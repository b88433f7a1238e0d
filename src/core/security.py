import hashlib
import hmac

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader
from loguru import logger

from src.config.settings import settings

# The identity provider signs webhook bodies and sends "sha256=<hex>" in this header
identity_signature_header = APIKeyHeader(name="X-Identity-Signature", auto_error=False)


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256).hexdigest()


async def verify_identity_webhook_signature(
    request: Request, signature_header: str | None = Security(identity_signature_header)
) -> bytes:
    """Validates the HMAC signature and returns the raw body.

    The body stream is awaited exactly once here so the route can parse it
    without deadlocking the ASGI receive channel.

    Raises:
        HTTPException: 500 when no secret is configured (fail closed), 401 when the
            header is missing, 400 when it is malformed, 403 on mismatch.
    """
    if not settings.IDENTITY_WEBHOOK_SECRET:
        logger.error("IDENTITY_WEBHOOK_SECRET is null. Failing closed.")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Configuration missing.")

    if not signature_header:
        logger.warning("Rejected Webhook: Missing X-Identity-Signature header.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing signature.")

    raw_body = await request.body()

    scheme, _, provided_hash = signature_header.partition("=")
    if scheme != "sha256" or not provided_hash:
        logger.warning(f"Rejected Webhook: Malformed signature header -> {signature_header}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed signature.")

    calculated_hash = compute_signature(raw_body, settings.IDENTITY_WEBHOOK_SECRET)

    if not hmac.compare_digest(provided_hash, calculated_hash):
        logger.warning("Identity webhook signature mismatch.")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Signature mismatch.")

    logger.debug(f"Identity webhook signature validated ({len(raw_body)} bytes).")
    return raw_body
