import pytest

from sptth import log
from sptth.log import LogLevel


@pytest.fixture
def fresh_level(monkeypatch):
    monkeypatch.setattr(log, "_configured", None)


def test_parse_valid_levels():
    assert LogLevel.parse("error") == LogLevel.ERROR
    assert LogLevel.parse("info") == LogLevel.INFO
    assert LogLevel.parse("debug") == LogLevel.DEBUG


def test_parse_invalid_level():
    with pytest.raises(ValueError, match="invalid log_level"):
        LogLevel.parse("warn")


def test_level_ordering():
    assert LogLevel.parse("error") < LogLevel.parse("info")
    assert LogLevel.parse("info") < LogLevel.parse("debug")


def test_as_str_roundtrip():
    for level in (LogLevel.ERROR, LogLevel.INFO, LogLevel.DEBUG):
        assert LogLevel.parse(level.as_str()) == level


def test_as_str_values():
    assert LogLevel.ERROR.as_str() == "error"
    assert LogLevel.DEBUG.as_str() == "debug"


def test_default_level_is_info(fresh_level):
    assert log.enabled(LogLevel.ERROR)
    assert log.enabled(LogLevel.INFO)
    assert not log.enabled(LogLevel.DEBUG)


def test_init_only_first_call_counts(fresh_level):
    log.init(LogLevel.ERROR)
    log.init(LogLevel.DEBUG)
    assert log.enabled(LogLevel.ERROR)
    assert not log.enabled(LogLevel.INFO)


def test_output_format(fresh_level, capsys):
    log.init(LogLevel.DEBUG)
    log.error("DNS", "boom")
    log.info("TLS", "hello")
    log.debug("PROXY", "detail")
    err = capsys.readouterr().err.splitlines()
    assert err == ["[DNS] ERROR boom", "[TLS] INFO hello", "[PROXY] DEBUG detail"]


def test_filtered_messages_are_suppressed(fresh_level, capsys):
    log.init(LogLevel.ERROR)
    log.info("TLS", "hidden")
    log.debug("TLS", "hidden")
    log.error("TLS", "shown")
    assert capsys.readouterr().err == "[TLS] ERROR shown\n"