import sys

import pytest

sys.path.insert(0, '.')

from api.admission import (
    AdmissionGate,
    FixedWindowRateLimiter,
    InvalidPayload,
    RateLimited,
    Unauthorized,
)
from tests.dummies import FakeClock


def _gate(clock=None, **kwargs):
    limiter = FixedWindowRateLimiter(limit=30, window_s=60.0, clock=clock or FakeClock())
    return AdmissionGate('vip', limiter, **kwargs)


@pytest.mark.parametrize('payload', [None, [], 'BUY EURUSD', 42])
def test_rejects_non_object_payload(payload):
    with pytest.raises(InvalidPayload):
        _gate().admit(payload, '1.2.3.4')


@pytest.mark.parametrize('payload', [
    {},
    {'ticker': 'EURUSD'},
    {'signal': 'BUY'},
    {'ticker': '', 'signal': 'BUY'},
    {'ticker': '/-', 'signal': 'BUY'},
    {'ticker': 'EURUSD', 'signal': '   '},
])
def test_rejects_missing_required_fields(payload):
    with pytest.raises(InvalidPayload):
        _gate().admit(payload, '1.2.3.4')


def test_normalizes_ticker_and_defaults_strategy():
    alert = _gate().admit({'ticker': 'eur/usd', 'signal': 'Buy 5MIN', 'price': '1.0850'}, '1.2.3.4')
    assert alert.ticker == 'EURUSD'
    assert alert.strategy == 'vip'
    assert alert.signal == 'Buy 5MIN'
    assert alert.price == pytest.approx(1.085)
    assert alert.origin == '1.2.3.4'


def test_non_numeric_price_is_dropped():
    alert = _gate().admit({'ticker': 'EURUSD', 'signal': 'BUY', 'price': '{{close}}'}, 'x')
    assert alert.price is None


def test_strategy_precedence_body_then_path_then_default():
    gate = _gate()
    assert gate.admit({'ticker': 'X', 'signal': 'BUY', 'strategy': 'Gold'}, 'a', path_strategy='vip-2').strategy == 'gold'
    assert gate.admit({'ticker': 'X', 'signal': 'BUY'}, 'a', path_strategy='VIP-2').strategy == 'vip-2'
    assert gate.admit({'ticker': 'X', 'signal': 'BUY'}, 'a').strategy == 'vip'


def test_legacy_tradingview_path_means_default_strategy():
    alert = _gate().admit({'ticker': 'GBPUSD', 'signal': 'buy'}, 'a', path_strategy='tradingview')
    assert alert.strategy == 'vip'


@pytest.mark.parametrize('strategy', ['channels:*', 'a b', '../x', 'x' * 40, '-lead'])
def test_rejects_unsafe_strategy_names(strategy):
    with pytest.raises(InvalidPayload):
        _gate().admit({'ticker': 'EURUSD', 'signal': 'BUY', 'strategy': strategy}, 'a')


def test_rate_limit_fixed_window():
    clock = FakeClock()
    gate = _gate(clock)
    payload = {'ticker': 'EURUSD', 'signal': 'BUY'}

    for _ in range(30):
        gate.admit(payload, '9.9.9.9')
    with pytest.raises(RateLimited):
        gate.admit(payload, '9.9.9.9')

    # other origins and other instruments have their own windows
    gate.admit(payload, '8.8.8.8')
    gate.admit({'ticker': 'GBPUSD', 'signal': 'BUY'}, '9.9.9.9')

    clock.advance(59)
    with pytest.raises(RateLimited):
        gate.admit(payload, '9.9.9.9')

    clock.advance(1)
    assert gate.admit(payload, '9.9.9.9').ticker == 'EURUSD'


def test_rate_limit_key_uses_normalized_ticker():
    gate = _gate()
    for _ in range(30):
        gate.admit({'ticker': 'EUR/USD', 'signal': 'BUY'}, 'a')
    with pytest.raises(RateLimited):
        gate.admit({'ticker': 'eurusd', 'signal': 'BUY'}, 'a')


def test_invalid_requests_do_not_consume_rate_budget():
    gate = _gate()
    for _ in range(40):
        with pytest.raises(InvalidPayload):
            gate.admit({'ticker': 'EURUSD'}, 'a')
    assert gate.admit({'ticker': 'EURUSD', 'signal': 'BUY'}, 'a')


def test_shared_secret_from_header_or_body():
    gate = _gate(secret='s3cret')
    payload = {'ticker': 'EURUSD', 'signal': 'BUY'}
    with pytest.raises(Unauthorized):
        gate.admit(dict(payload), 'a')
    with pytest.raises(Unauthorized):
        gate.admit(dict(payload, secret='wrong'), 'a')

    assert gate.admit(dict(payload), 'a', header_secret='s3cret').ticker == 'EURUSD'
    alert = gate.admit(dict(payload, passphrase='s3cret'), 'a')
    assert 'passphrase' not in alert.raw


def test_routing_identifier_required_when_configured():
    gate = _gate(require_routing_id=True)
    with pytest.raises(InvalidPayload):
        gate.admit({'ticker': 'EURUSD', 'signal': 'BUY'}, 'a')
    assert gate.admit({'ticker': 'EURUSD', 'signal': 'BUY', 'chat_id': -100123}, 'a').chat_id == '-100123'
    assert gate.admit({'ticker': 'EURUSD', 'signal': 'BUY', 'strategy': 'gold'}, 'a').strategy == 'gold'


@pytest.mark.parametrize('value', [float('inf'), 'inf', '-inf', 'nan', -60, 0, '{{interval}}'])
def test_unusable_duration_is_dropped(value):
    alert = _gate().admit({'ticker': 'EURUSD', 'signal': 'BUY', 'time': value}, 'a')
    assert alert.time is None


def test_duration_and_price_are_parsed():
    alert = _gate().admit({'ticker': 'EURUSD', 'signal': 'BUY', 'time': '180', 'price': 'inf'}, 'a')
    assert alert.time == 180
    assert alert.price is None


def test_rate_limiter_stays_within_key_budget():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(limit=1, window_s=60.0, clock=clock, max_keys=3)
    for key in ('a', 'b', 'c', 'd'):
        assert limiter.allow(key)
    assert len(limiter._windows) == 3
    # the oldest live window was evicted, so its key starts fresh
    assert limiter.allow('a')
    assert not limiter.allow('d')
