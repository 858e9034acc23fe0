"""Unit tests for subdomain allocation."""
import random
import re

from app.services.subdomain import (
    ADJECTIVES,
    NOUNS,
    SubdomainAllocator,
    is_valid_subdomain_format,
    total_combinations,
)

_WORD_PAIR = re.compile(r"^[a-z]+-[a-z]+$")
_SUFFIXED = re.compile(r"^[a-z]+-[a-z]+-[a-z0-9]{4}$")


def test_word_lists_are_dns_safe():
    for word in ADJECTIVES + NOUNS:
        assert re.fullmatch(r"[a-z]+", word), word
    assert len(set(ADJECTIVES)) == len(ADJECTIVES)
    assert len(set(NOUNS)) == len(NOUNS)
    assert total_combinations() > 10_000


def test_allocate_returns_adjective_noun():
    allocator = SubdomainAllocator(lambda name: True, rng=random.Random(7))
    for _ in range(200):
        name = allocator.allocate()
        assert _WORD_PAIR.match(name)
        adjective, noun = name.split("-")
        assert adjective in ADJECTIVES
        assert noun in NOUNS
        assert is_valid_subdomain_format(name)


def test_allocate_skips_taken_names():
    taken = set()
    first = SubdomainAllocator(lambda name: True, rng=random.Random(1)).candidate()
    taken.add(first)
    checked = []

    def is_available(name):
        checked.append(name)
        return name not in taken

    allocator = SubdomainAllocator(is_available, rng=random.Random(1))
    name = allocator.allocate()
    assert name != first
    assert checked[0] == first
    assert name == checked[-1]


def test_allocate_never_returns_an_unavailable_name_while_pairs_remain():
    taken = set()
    rng = random.Random(42)
    for _ in range(300):
        allocator = SubdomainAllocator(lambda n: n not in taken, max_attempts=100, rng=rng)
        name = allocator.allocate()
        if _WORD_PAIR.match(name):
            assert name not in taken
        taken.add(name)
    assert len(taken) == 300


def test_allocate_falls_back_to_suffix_when_exhausted():
    calls = []

    def nothing_free(name):
        calls.append(name)
        return False

    allocator = SubdomainAllocator(nothing_free, max_attempts=5, rng=random.Random(3))
    name = allocator.allocate()
    assert len(calls) == 5
    assert _SUFFIXED.match(name)
    assert name.startswith(calls[-1] + "-")
    assert is_valid_subdomain_format(name)


def test_subdomain_format_validation():
    assert is_valid_subdomain_format("cozy-peanut")
    assert is_valid_subdomain_format("cozy-peanut-a1b2")
    assert not is_valid_subdomain_format("")
    assert not is_valid_subdomain_format("-cozy")
    assert not is_valid_subdomain_format("cozy-")
    assert not is_valid_subdomain_format("Cozy-Peanut")
    assert not is_valid_subdomain_format("cozy--peanut")
    assert not is_valid_subdomain_format("cozy.peanut")
    assert not is_valid_subdomain_format("a" * 64)
