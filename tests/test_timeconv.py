import time

import pytest

from meshproxy.timeconv import Converter

DELAY = 1_000_000_000


def test_converter():
    conv = Converter()
    now = time.monotonic_ns()
    sys_now = conv.instant_to_system_time(now)
    later = conv.system_time_to_instant(sys_now + DELAY)
    assert later == now + DELAY


def test_reference_points_map_to_each_other():
    conv = Converter(1_700_000_000_000_000_000)
    assert conv.system_time_to_instant(conv.sys_now) == conv.now
    assert conv.instant_to_system_time(conv.now) == conv.sys_now


def test_past_round_trip():
    conv = Converter()
    earlier = conv.now - 5_000
    sys_earlier = conv.instant_to_system_time(earlier)
    assert sys_earlier == conv.sys_now - 5_000
    assert conv.system_time_to_instant(sys_earlier) == earlier


def test_unrepresentable_instant_is_none():
    conv = Converter()
    assert conv.system_time_to_instant(conv.sys_now - conv.now - 1) is None


def test_elapsed_nanos():
    conv = Converter()
    assert conv.elapsed_nanos(conv.now + 42) == 42
    assert conv.elapsed_nanos(conv.now - 42) == 0


def test_subsec_nanos():
    assert Converter(1_500_000_000).subsec_nanos() == 500_000_000
    assert Converter(3_000_000_000).subsec_nanos() == 0


def test_subsec_nanos_before_epoch():
    with pytest.raises(ValueError):
        Converter(-1).subsec_nanos()