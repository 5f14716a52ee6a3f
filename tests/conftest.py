import logging

import pytest
import structlog


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo configure_logging() so handlers never outlive the streams they wrap."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
    root.setLevel(logging.WARNING)
    structlog.reset_defaults()
