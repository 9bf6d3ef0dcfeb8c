import pytest

from engines.dedupe import CooldownSet, dedupe_key


def test_dedupe_key_combines_type_and_issue():
    assert dedupe_key("quality", "Credibility score below target") == "quality:Credibility score below target"


def test_claim_blocks_until_cooldown_expires(clock):
    keys = CooldownSet(30, clock=clock)
    assert keys.claim("quality:copy") is True
    assert keys.claim("quality:copy") is False
    assert "quality:copy" in keys

    clock.advance(29)
    assert keys.claim("quality:copy") is False
    clock.advance(1)
    assert "quality:copy" not in keys
    assert keys.claim("quality:copy") is True


def test_explicit_now_and_release(clock):
    keys = CooldownSet(10, clock=clock)
    keys.claim("a", now=100.0)
    keys.claim("b", now=105.0)
    assert keys.active(now=108.0) == ["a", "b"]
    assert keys.active(now=112.0) == ["b"]

    keys.release("b")
    keys.release("missing")
    assert keys.active(now=112.0) == []


def test_clear_and_len(clock):
    keys = CooldownSet(10, clock=clock)
    keys.claim("a")
    keys.claim("b")
    assert len(keys) == 2
    keys.clear()
    assert len(keys) == 0


def test_cooldown_must_be_positive():
    with pytest.raises(ValueError):
        CooldownSet(0)
