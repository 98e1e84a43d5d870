"""
Utility functions for the SMS pipeline.
"""

import base64
import hmac
import hashlib
import logging
import re
from typing import Mapping

logger = logging.getLogger(__name__)

# "+" then a non-zero digit then 9-14 more digits (10-15 digits in total)
PHONE_NUMBER_PATTERN = re.compile(r"^\+[1-9]\d{9,14}$")

MAX_BODY_LENGTH = 160


def is_valid_phone_number(phone: str) -> bool:
    """Check that ``phone`` is in international format, e.g. +14155551234."""
    if not isinstance(phone, str):
        return False
    return PHONE_NUMBER_PATTERN.fullmatch(phone) is not None


def is_valid_body(body: str) -> bool:
    """A message body must fit in a single SMS segment."""
    return isinstance(body, str) and 0 < len(body) <= MAX_BODY_LENGTH


def mask_phone(phone: str) -> str:
    """Mask all but the last four digits of a phone number for logging."""
    if not phone:
        return ""
    if len(phone) <= 4:
        return "*" * len(phone)
    return "*" * (len(phone) - 4) + phone[-4:]


def compute_twilio_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """
    Compute the value Twilio sends in the X-Twilio-Signature header.

    Args:
        url: Full URL the callback was posted to
        params: Callback parameters
        auth_token: Twilio auth token

    Returns:
        Base64-encoded HMAC-SHA1 of the URL followed by every parameter
        name and value, sorted by name
    """
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(
        auth_token.encode("utf-8"),
        data.encode("utf-8"),
        hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(url: str, params: Mapping[str, str], signature: str, auth_token: str) -> bool:
    """
    Verify a Twilio webhook signature.

    Args:
        url: Full URL the callback was posted to
        params: Callback parameters
        signature: Value of the X-Twilio-Signature header
        auth_token: Twilio auth token

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying Twilio signature for {url}")

    expected_signature = compute_twilio_signature(url, params, auth_token)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
