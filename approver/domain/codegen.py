"""Human-friendly approval reference codes.

Codes look like ``A-X7K9Q2``: a fixed prefix, a dash, and six characters from
an alphabet without look-alike glyphs (no 0/O, 1/I/l), so they survive being
read aloud or copied by hand.
"""

import logging
import re
import secrets
from collections.abc import Awaitable, Callable

from approver.domain.exceptions import CodeGenerationExhaustedError
from approver.infra.observability import metrics

logger = logging.getLogger(__name__)

CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
CODE_PREFIX = "A"
CODE_SEPARATOR = "-"
CODE_RANDOM_LENGTH = 6
CODE_LENGTH = len(CODE_PREFIX) + len(CODE_SEPARATOR) + CODE_RANDOM_LENGTH

MAX_CODE_ATTEMPTS = 5

# One letter, a dash, six alphabet characters
_CODE_PATTERN = re.compile(r"^[A-Z]-[2-9A-HJ-NP-Z]{6}$")


def generate_code() -> str:
    """Generate a random approval code.

    Each character maps one byte from ``secrets`` onto the 32-symbol alphabet.
    256 is a multiple of 32, so the mapping is unbiased.

    Returns:
        8-character code such as ``A-X7K9Q2``
    """
    random_bytes = secrets.token_bytes(CODE_RANDOM_LENGTH)
    body = "".join(CODE_ALPHABET[b % len(CODE_ALPHABET)] for b in random_bytes)
    return f"{CODE_PREFIX}{CODE_SEPARATOR}{body}"


async def generate_unique_code(exists: Callable[[str], Awaitable[bool]]) -> str:
    """Generate a code that is not already taken.

    Args:
        exists: Async check returning True if a code is already in use

    Returns:
        First candidate for which ``exists`` returned False

    Raises:
        CodeGenerationExhaustedError: If every attempt collided
    """
    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        code = generate_code()

        if not await exists(code):
            return code

        metrics.record_code_collision()
        logger.warning(
            "Approval code collision detected",
            extra={"approval_code": code, "attempt": attempt, "max_attempts": MAX_CODE_ATTEMPTS},
        )

    raise CodeGenerationExhaustedError(
        f"Failed to generate unique approval code after {MAX_CODE_ATTEMPTS} attempts",
        context={"attempts": MAX_CODE_ATTEMPTS},
    )


def is_valid_code_format(code: str) -> bool:
    """Return True if ``code`` has the shape of an approval code."""
    return bool(_CODE_PATTERN.match(code))


__all__ = [
    "CODE_ALPHABET",
    "CODE_LENGTH",
    "CODE_PREFIX",
    "MAX_CODE_ATTEMPTS",
    "generate_code",
    "generate_unique_code",
    "is_valid_code_format",
]
