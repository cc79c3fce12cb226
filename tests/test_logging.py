import logging

from tutor_rag_core.logging_setup import configure_logging


def test_configure_logging_sets_levels() -> None:
    configure_logging("debug")
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING
    # Module loggers created before setup keep working.
    assert not logging.getLogger("tutor_rag_core.pipeline").disabled
    configure_logging("INFO")
