import pytest
from pydantic import ValidationError

from settings import Settings


@pytest.mark.parametrize(
    "raw, expected",
    [("info", "INFO"), (" debug ", "DEBUG"), ("warn", "WARNING"), ("FATAL", "CRITICAL"), ("Error", "ERROR")],
)
def test_log_level_is_normalized_for_uvicorn(raw, expected):
    level = Settings(LOG_LEVEL=raw).LOG_LEVEL
    assert level == expected
    assert level.lower() in {"critical", "error", "warning", "info", "debug"}


@pytest.mark.parametrize("raw", ["verbose", "notset", ""])
def test_unknown_log_level_is_rejected(raw):
    with pytest.raises(ValidationError):
        Settings(LOG_LEVEL=raw)


def test_check_interval_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(CHECK_INTERVAL_SEC=0)
