import pytest

from meshproxy.telemetry import (
    InvalidFilterError,
    LogFilter,
    TelemetryError,
    get_current_loglevel,
    set_level,
    setup_logging,
)


def test_default_level_applies_everywhere():
    f = LogFilter.parse("info")
    assert f.level_for("anything.at.all") == "info"


def test_most_specific_target_wins():
    f = LogFilter.parse("warn,meshproxy=info,meshproxy.proxy=debug")
    assert f.level_for("meshproxy.proxy.inbound") == "debug"
    assert f.level_for("meshproxy.admin") == "info"
    assert f.level_for("meshproxyx") == "warn"


def test_no_default_means_off():
    assert LogFilter.parse("meshproxy=debug").level_for("other") == "off"


def test_later_directive_overrides():
    f = LogFilter.parse("info,a=debug,a=error,warn")
    assert f.level_for("a") == "error"
    assert f.default == "warn"


def test_bare_target_enables_trace():
    assert LogFilter.parse("meshproxy").level_for("meshproxy.x") == "trace"


def test_round_trip():
    f = LogFilter.parse("debug,meshproxy.proxy=error,hyper=warn")
    assert LogFilter.parse(str(f)) == f


@pytest.mark.parametrize("text", ["meshproxy=loud", "not valid!", "=info"])
def test_invalid_filter(text):
    with pytest.raises(InvalidFilterError) as info:
        LogFilter.parse(text)
    assert isinstance(info.value, TelemetryError)


def test_set_level_and_reset(monkeypatch):
    monkeypatch.delenv("MESHPROXY_LOG", raising=False)
    setup_logging()
    set_level(True, "meshproxy.a=debug")
    current = LogFilter.parse(get_current_loglevel())
    assert current.level_for("meshproxy.a") == "debug"
    assert current.level_for("other") == "info"

    set_level(False, "meshproxy.b=error")
    current = LogFilter.parse(get_current_loglevel())
    assert current.level_for("meshproxy.a") == "debug"
    assert current.level_for("meshproxy.b") == "error"

    set_level(True, "meshproxy.c=warn")
    current = LogFilter.parse(get_current_loglevel())
    assert current.level_for("meshproxy.a") == "info"
    assert current.level_for("meshproxy.c") == "warn"


def test_set_level_invalid_keeps_filter(monkeypatch):
    monkeypatch.delenv("MESHPROXY_LOG", raising=False)
    setup_logging()
    set_level(True, "meshproxy.k=error")
    before = get_current_loglevel()
    with pytest.raises(InvalidFilterError):
        set_level(False, "meshproxy.k=nonsense")
    assert get_current_loglevel() == before