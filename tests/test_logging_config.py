import logging

from counting_api.logging_config import ContextFormatter, get_child_logger


def test_context_from_extra_is_appended():
    formatter = ContextFormatter("%(levelname)s - %(message)s")
    record = logging.LogRecord("counting_api.test", logging.INFO, __file__, 1, "Zone opened", (), None)
    record.zone_id = "z1"
    record.operator = "ana@example.com"

    assert formatter.format(record) == "INFO - Zone opened | operator=ana@example.com zone_id=z1"


def test_plain_record_is_unchanged():
    formatter = ContextFormatter("%(levelname)s - %(message)s")
    record = logging.LogRecord("counting_api.test", logging.WARNING, __file__, 1, "Careful", (), None)

    assert formatter.format(record) == "WARNING - Careful"


def test_child_loggers_hang_off_the_package_logger():
    assert get_child_logger("services.sessions").name == "counting_api.services.sessions"
