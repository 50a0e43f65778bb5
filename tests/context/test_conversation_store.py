import pytest

from engagement.context.conversation_store import (
    ConversationContextStore,
    CARD_SELECTION,
    PAYOFF_SELECTION,
    DELETE_CONFIRMATION,
)
from engagement.utils.time import parse_timestamp_ms

NOW = parse_timestamp_ms("2026-03-10T12:00:00Z")


@pytest.fixture
def ctx(r):
    return ConversationContextStore(r, ttl_sec=300)


def test_consume_returns_payload_exactly_once(ctx):
    ctx.store("u1", CARD_SELECTION, {"cards": ["nubank", "itau"], "amount": 50}, now=NOW)

    assert ctx.consume("u1", CARD_SELECTION, now=NOW + 1000) == {"cards": ["nubank", "itau"], "amount": 50}
    assert ctx.consume("u1", CARD_SELECTION, now=NOW + 1001) is None


def test_get_does_not_consume(ctx):
    ctx.store("u1", PAYOFF_SELECTION, {"installments": [1, 2]}, now=NOW)
    assert ctx.get("u1", PAYOFF_SELECTION, now=NOW) == {"installments": [1, 2]}
    assert ctx.get("u1", PAYOFF_SELECTION, now=NOW) == {"installments": [1, 2]}


def test_lazy_expiry_on_read(ctx, r):
    ctx.store("u1", CARD_SELECTION, {"x": 1}, now=NOW)

    # The key still exists in Redis; createdAt decides.
    assert ctx.get("u1", CARD_SELECTION, now=NOW + 300 * 1000) is None
    assert r.exists("ctx:u1:card_selection") == 0
    assert ctx.consume("u1", CARD_SELECTION, now=NOW + 300 * 1000) is None


def test_consume_after_ttl_returns_none(ctx):
    ctx.store("u1", CARD_SELECTION, {"x": 1}, now=NOW)
    assert ctx.consume("u1", CARD_SELECTION, now=NOW + 301 * 1000) is None


def test_store_overwrites_previous_context(ctx):
    ctx.store("u1", CARD_SELECTION, {"v": 1}, now=NOW)
    ctx.store("u1", CARD_SELECTION, {"v": 2}, now=NOW + 10)
    assert ctx.consume("u1", CARD_SELECTION, now=NOW + 20) == {"v": 2}


def test_contexts_are_keyed_per_flow(ctx):
    ctx.store("u1", CARD_SELECTION, {"flow": "card"}, now=NOW)
    ctx.store("u1", DELETE_CONFIRMATION, {"flow": "delete"}, now=NOW)
    assert ctx.consume("u1", DELETE_CONFIRMATION, now=NOW) == {"flow": "delete"}
    assert ctx.get("u1", CARD_SELECTION, now=NOW) == {"flow": "card"}


def test_cancel_is_idempotent(ctx):
    ctx.store("u1", CARD_SELECTION, {"x": 1}, now=NOW)
    assert ctx.cancel("u1", CARD_SELECTION) is True
    assert ctx.cancel("u1", CARD_SELECTION) is False
    assert ctx.get("u1", CARD_SELECTION, now=NOW) is None


def test_redis_expiry_is_set(ctx, r):
    ctx.store("u1", CARD_SELECTION, {"x": 1}, now=NOW)
    assert 0 < r.pttl("ctx:u1:card_selection") <= 300 * 1000


def test_sweep_removes_only_expired(ctx):
    ctx.store("old", CARD_SELECTION, {"x": 1}, now=NOW - 10 * 60 * 1000)
    ctx.store("fresh", CARD_SELECTION, {"x": 2}, now=NOW)

    assert ctx.sweep_expired(now=NOW) == 1
    assert ctx.get("fresh", CARD_SELECTION, now=NOW) == {"x": 2}
    assert ctx.sweep_expired(now=NOW) == 0


def test_unknown_flow_kind_rejected(ctx):
    with pytest.raises(ValueError):
        ctx.store("u1", "budget_wizard", {}, now=NOW)
