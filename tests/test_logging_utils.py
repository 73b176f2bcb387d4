import logging

from runbox.logging_utils import SecretRedactingFilter, configure_logging


def _record(msg: str, *args: object) -> logging.LogRecord:
    return logging.LogRecord("runbox.test", logging.INFO, __file__, 1, msg, args, None)


def test_filter_masks_run_secrets() -> None:
    record = _record("secret is %s", "0123456789abcdef0123456789abcdef")

    assert SecretRedactingFilter().filter(record) is True
    assert record.getMessage() == "secret is [REDACTED]"


def test_filter_leaves_ordinary_text_alone() -> None:
    record = _record("Loaded %d libraries from %s", 2, "cdn.jsdelivr.net")

    _ = SecretRedactingFilter().filter(record)

    assert record.getMessage() == "Loaded 2 libraries from cdn.jsdelivr.net"


def test_configure_logging_installs_one_handler() -> None:
    name = "runbox.test_configure"
    logger = configure_logging("DEBUG", logger_name=name)
    again = configure_logging("WARNING", logger_name=name)

    assert logger is again
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING
    assert any(isinstance(f, SecretRedactingFilter) for f in logger.handlers[0].filters)
