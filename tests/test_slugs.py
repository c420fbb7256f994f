import pytest

from app.core.errors import AllocationExhausted, ConflictError, ValidationError
from app.core.slugs import (
    ALPHABET,
    DEFAULT_SLUG_LENGTH,
    RESERVED_PATHS,
    RetryPolicy,
    SlugAllocator,
    generate_slug,
    is_reserved_path,
    is_valid_slug,
    sanitize_slug,
)


class ExistsRecorder:
    """Existence predicate backed by a set, counting its calls."""

    def __init__(self, taken=(), always=False):
        self.taken = set(taken)
        self.always = always
        self.calls = []

    async def __call__(self, slug):
        self.calls.append(slug)
        return self.always or slug in self.taken


def test_alphabet_has_no_confusable_characters():
    """0 O l I i o never appear"""
    for char in "0OlIio":
        assert char not in ALPHABET


def test_generated_slugs_use_alphabet_and_length():
    """Generated slugs have the default length and only allowed characters"""
    for _ in range(200):
        slug = generate_slug()
        assert len(slug) == DEFAULT_SLUG_LENGTH
        assert set(slug) <= set(ALPHABET)


def test_reserved_paths_are_case_insensitive_and_nested():
    """Reserved words and anything under them are rejected"""
    assert is_reserved_path("login")
    assert is_reserved_path("LOGIN")
    assert is_reserved_path("api/anything")
    assert not is_reserved_path("loginx")
    for word in RESERVED_PATHS:
        assert not is_valid_slug(word)


def test_slug_format_rules():
    """Charset and length limits for custom slugs"""
    assert is_valid_slug("my-link_1")
    assert not is_valid_slug("")
    assert not is_valid_slug("has space")
    assert not is_valid_slug("dot.ted")
    assert not is_valid_slug("a" * 51)
    assert is_valid_slug("a" * 50)


def test_sanitize_trims_and_lowercases():
    """Custom slugs are normalized before checks"""
    assert sanitize_slug("  My-Link ") == "my-link"
    assert sanitize_slug(None) == ""


@pytest.mark.asyncio
async def test_allocate_avoids_taken_slugs():
    """Allocation skips anything already in use"""
    candidates = iter(["AAAAAA", "BBBBBB", "CCCCCC"])
    exists = ExistsRecorder(taken={"AAAAAA", "BBBBBB"})
    allocator = SlugAllocator(exists, generator=lambda length: next(candidates))

    assert await allocator.allocate() == "CCCCCC"
    assert exists.calls == ["AAAAAA", "BBBBBB", "CCCCCC"]


@pytest.mark.asyncio
async def test_allocate_gives_up_after_max_attempts():
    """Permanent collision checks existence exactly max_attempts times"""
    exists = ExistsRecorder(always=True)
    allocator = SlugAllocator(exists, policy=RetryPolicy(max_attempts=3))

    with pytest.raises(AllocationExhausted):
        await allocator.allocate()
    assert len(exists.calls) == 3


@pytest.mark.asyncio
async def test_reserved_candidates_are_redrawn_without_using_attempts():
    """Format rejections never reach the existence check"""
    candidates = iter(["admin", "static", "Good12"])
    exists = ExistsRecorder()
    allocator = SlugAllocator(
        exists, policy=RetryPolicy(max_attempts=1), generator=lambda length: next(candidates)
    )

    assert await allocator.allocate() == "Good12"
    assert exists.calls == ["Good12"]


@pytest.mark.asyncio
async def test_allocation_exhausted_is_a_conflict():
    """Callers may handle exhaustion as a conflict"""
    allocator = SlugAllocator(ExistsRecorder(always=True), policy=RetryPolicy(1))
    with pytest.raises(ConflictError):
        await allocator.allocate()


@pytest.mark.asyncio
async def test_claim_custom_distinguishes_errors():
    """Bad format is a validation error; a taken slug is a conflict"""
    exists = ExistsRecorder(taken={"taken"})
    allocator = SlugAllocator(exists)

    with pytest.raises(ValidationError):
        await allocator.claim_custom("   ")
    # empty input never reaches the store
    assert exists.calls == []

    with pytest.raises(ValidationError):
        await allocator.claim_custom("Dashboard")
    with pytest.raises(ValidationError):
        await allocator.claim_custom("bad slug!")
    with pytest.raises(ConflictError) as info:
        await allocator.claim_custom("TAKEN")
    assert not isinstance(info.value, AllocationExhausted)

    assert await allocator.claim_custom("  Fresh-One ") == "fresh-one"


@pytest.mark.asyncio
async def test_retry_policy_retries_listed_errors_only():
    """Listed errors consume an attempt, others propagate"""
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConflictError()
        return "done"

    policy = RetryPolicy(max_attempts=3, retry_on=(ConflictError,))
    assert await policy.run(flaky) == "done"
    assert len(calls) == 3

    async def broken():
        raise ValidationError("nope")

    with pytest.raises(ValidationError):
        await policy.run(broken)


@pytest.mark.asyncio
async def test_retry_policy_rejects_bad_bounds():
    """At least one attempt is required"""
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
