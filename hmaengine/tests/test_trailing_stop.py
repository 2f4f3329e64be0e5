import random

from hmaengine.execution.position_manager import apply_trailing
from hmaengine.runner.models import ActivePosition, OptionType, TradingParams


def _pos(bought=100.0, sl_points=10.0, target_points=500.0, **params):
    p = TradingParams(
        lots=1,
        quantity=75,
        target_points=target_points,
        stop_loss_points=sl_points,
        **params,
    )
    return ActivePosition(
        id="p1",
        symbol="NFO:NIFTY25AUG24500CE",
        option_type=OptionType.CE,
        params=p,
        buy_order_id="B1",
        bought_price=bought,
        quantity=75,
        initial_stop_loss=bought - sl_points,
        stop_loss=bought - sl_points,
        target=bought + target_points,
    )


def test_interval_trailing_steps_by_y_per_x():
    pos = _pos(use_trailing_stoploss=True, trailing_x=20, trailing_y=15)
    assert pos.stop_loss == 90

    mods = apply_trailing(pos, 125, now=1.0)
    assert pos.stop_loss == 105
    assert len(mods) == 1 and mods[0].old_stop_loss == 90 and mods[0].new_stop_loss == 105

    apply_trailing(pos, 145, now=2.0)
    assert pos.stop_loss == 120
    assert [m.new_stop_loss for m in pos.sl_modifications] == [105, 120]


def test_interval_trailing_below_x_does_nothing():
    pos = _pos(use_trailing_stoploss=True, trailing_x=20, trailing_y=15)
    assert apply_trailing(pos, 119.95, now=1.0) == []
    assert pos.stop_loss == 90


def test_trail_to_cost_follows_price():
    pos = _pos(trailing_stop_loss=True)
    apply_trailing(pos, 104, now=1.0)
    assert pos.stop_loss == 94
    mods = apply_trailing(pos, 102, now=2.0)
    assert mods == []
    assert pos.stop_loss == 94
    assert pos.sl_modifications[0].reason.startswith("TRAIL_TO_COST")


def test_higher_candidate_wins_when_both_modes_enabled():
    pos = _pos(trailing_stop_loss=True, use_trailing_stoploss=True, trailing_x=20, trailing_y=15)
    # trail-to-cost: 115, interval: 105
    apply_trailing(pos, 125, now=1.0)
    assert pos.stop_loss == 115
    assert pos.sl_modifications[-1].reason.startswith("TRAIL_TO_COST")


def test_disabled_trailing_never_moves_stop():
    pos = _pos()
    for ltp in (110, 150, 300):
        assert apply_trailing(pos, ltp, now=0.0) == []
    assert pos.stop_loss == 90


def test_stop_loss_never_decreases_over_random_walk():
    rng = random.Random(7)
    for _ in range(50):
        pos = _pos(
            trailing_stop_loss=rng.random() < 0.5,
            use_trailing_stoploss=True,
            trailing_x=rng.choice([5, 10, 20]),
            trailing_y=rng.choice([3, 7, 15]),
        )
        ltp = 100.0
        last = pos.stop_loss
        for step in range(200):
            ltp = max(0.05, ltp + rng.uniform(-6, 6))
            apply_trailing(pos, ltp, now=float(step))
            assert pos.stop_loss >= last
            last = pos.stop_loss
