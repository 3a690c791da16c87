import os

import pytest


def pytest_collection_modifyitems(config, items):
    """Hardware tests only run with SCRIBELOOP_HARDWARE_TESTS=1."""
    if os.getenv("SCRIBELOOP_HARDWARE_TESTS") == "1":
        return
    skip = pytest.mark.skip(reason="set SCRIBELOOP_HARDWARE_TESTS=1 to run hardware tests")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip)
