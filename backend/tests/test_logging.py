"""Logging setup tests"""
import logging

import pytest

from reelhouse.core.config import settings
from reelhouse.core.logging import setup_logging


@pytest.mark.medium
def test_setup_logging_levels(monkeypatch):
    root = logging.getLogger()
    root_level = root.level
    monkeypatch.setattr(settings, "LOG_LEVEL", "debug")
    try:
        setup_logging()

        assert root.level == logging.DEBUG
        assert logging.getLogger("botocore").level == logging.WARNING
        assert logging.getLogger("multipart").level == logging.WARNING
    finally:
        root.setLevel(root_level)
