"""
Short identifier allocation.

Auto-generated slugs come from an alphabet without visually confusable
characters (0/O, 1-like l/I, i/o). Custom slugs are sanitized and checked
against the same reserved-path policy. Existence checks go to the global slug
namespace; the store's unique constraint stays the final arbiter.
"""

import logging
import re
import secrets
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from app.core.errors import AllocationExhausted, ConflictError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz"
DEFAULT_SLUG_LENGTH = 6
DEFAULT_MAX_RETRIES = 3
MAX_SLUG_LENGTH = 50
# Guards against a generator that keeps producing reserved candidates
MAX_CANDIDATE_DRAWS = 100

SLUG_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

# Paths the application routes itself; never handed out as slugs
RESERVED_PATHS = (
    "login",
    "logout",
    "auth",
    "callback",
    "dashboard",
    "api",
    "admin",
    "_next",
    "static",
    "favicon.ico",
    "robots.txt",
    "sitemap.xml",
)


def is_reserved_path(path: str) -> bool:
    normalized = path.lower().lstrip("/")
    return any(
        normalized == reserved or normalized.startswith(f"{reserved}/")
        for reserved in RESERVED_PATHS
    )


def is_valid_slug(slug: str) -> bool:
    if not slug or len(slug) > MAX_SLUG_LENGTH:
        return False
    if not SLUG_PATTERN.match(slug):
        return False
    return not is_reserved_path(slug)


def sanitize_slug(raw: str) -> str:
    return (raw or "").strip().lower()


def generate_slug(length: int = DEFAULT_SLUG_LENGTH) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


# =========================
# Retry policy
# =========================
class RetryPolicy:
    """
    Bounded retry for collision-prone operations.

    ``run`` calls the attempt function up to ``max_attempts`` times. An
    attempt either returns a value accepted by ``accept`` (done), returns a
    rejected value, or raises one of ``retry_on`` (both count as a failed
    attempt). Any other exception propagates immediately. When every attempt
    fails, ``exhausted`` is raised.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_RETRIES,
        retry_on: Tuple[Type[BaseException], ...] = (),
        exhausted: Type[Exception] = AllocationExhausted,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.retry_on = retry_on
        self.exhausted = exhausted

    async def run(
        self,
        attempt: Callable[[], Awaitable[T]],
        accept: Callable[[T], bool] = lambda _: True,
    ) -> T:
        for number in range(1, self.max_attempts + 1):
            try:
                result = await attempt()
            except self.retry_on as error:
                logger.info(f"Attempt {number}/{self.max_attempts} failed: {error}")
                continue
            if accept(result):
                return result
            logger.info(f"Attempt {number}/{self.max_attempts} rejected")

        raise self.exhausted(
            f"Gave up after {self.max_attempts} attempt(s)"
        )


# =========================
# Allocator
# =========================
class SlugAllocator:
    """
    GenerateCandidate -> ValidateFormat -> CheckExistence -> Accept | Retry | Exhausted.

    ``exists`` is the global existence predicate, usually
    ``ScopedDB.slug_exists``.
    """

    def __init__(
        self,
        exists: Callable[[str], Awaitable[bool]],
        length: int = DEFAULT_SLUG_LENGTH,
        policy: Optional[RetryPolicy] = None,
        generator: Callable[[int], str] = generate_slug,
    ):
        self.exists = exists
        self.length = length
        self.policy = policy or RetryPolicy(DEFAULT_MAX_RETRIES)
        self.generator = generator

    def _candidate(self) -> str:
        # Format rejections are redrawn and do not consume an attempt
        for _ in range(MAX_CANDIDATE_DRAWS):
            candidate = self.generator(self.length)
            if is_valid_slug(candidate):
                return candidate
        raise AllocationExhausted("Slug generator produced no valid candidate")

    async def allocate(self) -> str:
        """Return a slug no tenant uses yet, or raise AllocationExhausted."""

        async def attempt() -> Optional[str]:
            candidate = self._candidate()
            if await self.exists(candidate):
                return None
            return candidate

        try:
            return await self.policy.run(attempt, accept=lambda slug: slug is not None)
        except AllocationExhausted:
            logger.warning(
                f"Slug allocation exhausted after {self.policy.max_attempts} attempts"
            )
            raise AllocationExhausted(
                f"Failed to generate unique slug after {self.policy.max_attempts} attempts"
            ) from None

    async def claim_custom(self, raw: str) -> str:
        """Sanitize and check a user-supplied slug."""
        slug = sanitize_slug(raw)
        if not slug:
            raise ValidationError("Slug cannot be empty")
        if not is_valid_slug(slug):
            raise ValidationError("Invalid slug format or reserved word")
        if await self.exists(slug):
            raise ConflictError("Slug already taken")
        return slug
