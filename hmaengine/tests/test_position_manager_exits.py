import pytest

from hmaengine.execution.exit_rules import bracket_for
from hmaengine.execution.position_manager import check_exit
from hmaengine.runner.models import ActivePosition, ExitReason, OptionType, TradingParams


def _pos(auto_exit=True):
    p = TradingParams(lots=1, quantity=75, target_points=20, stop_loss_points=10, auto_exit_on_stop_loss=auto_exit)
    sl, tgt = bracket_for(105.0, 20, 10)
    return ActivePosition(
        id="p1",
        symbol="NFO:NIFTY25AUG24500CE",
        option_type=OptionType.CE,
        params=p,
        buy_order_id="B1",
        bought_price=105.0,
        quantity=75,
        initial_stop_loss=sl,
        stop_loss=sl,
        target=tgt,
    )


def test_bracket_for_long():
    assert bracket_for(105.0, 20, 10) == (95.0, 125.0)


def test_bracket_rejects_bad_entry():
    with pytest.raises(ValueError):
        bracket_for(0.0, 20, 10)


def test_target_hit():
    assert check_exit(_pos(), 125.0) == (True, ExitReason.TARGET)
    assert check_exit(_pos(), 130.0) == (True, ExitReason.TARGET)


def test_stop_loss_hit():
    assert check_exit(_pos(), 95.0) == (True, ExitReason.STOPLOSS)


def test_between_bracket_holds():
    assert check_exit(_pos(), 110.0) == (False, None)


def test_stop_loss_ignored_without_auto_exit():
    assert check_exit(_pos(auto_exit=False), 90.0) == (False, None)


def test_invalid_ltp_holds():
    assert check_exit(_pos(), 0.0) == (False, None)
