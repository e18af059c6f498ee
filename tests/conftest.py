import enum
import os

import pytest


class TestLevels(str, enum.Enum):
    UNIT = "unit"
    MINIMAL = "minimal"
    RELEASE = "release"


DEFAULT_LEVEL = TestLevels.UNIT

TEST_LEVEL_HIERARCHY = {
    TestLevels.UNIT: 0,
    TestLevels.MINIMAL: 1,
    TestLevels.RELEASE: 2,
}


def pytest_addoption(parser):
    parser.addoption(
        "--level",
        action="store",
        default=DEFAULT_LEVEL,
        help="Test level to run: unit, minimal or release",
    )


def pytest_collection_modifyitems(config, items):
    request_level = config.getoption("level")
    new_items = []

    for item in items:
        test_level = item.get_closest_marker("level")
        if (
            test_level is not None
            and TEST_LEVEL_HIERARCHY[test_level.args[0]]
            == TEST_LEVEL_HIERARCHY[request_level]  # currently we get tests only with the provided label
        ):
            new_items.append(item)

    items[:] = new_items


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the global config at an empty per-test file and clear overrides."""
    from peerrun.globals import config

    monkeypatch.setattr(type(config), "CONFIG_FILE", tmp_path / "config.yaml")
    for var in list(os.environ):
        if var.startswith("PEERRUN_"):
            monkeypatch.delenv(var)
    config.reset()
    yield config
    config.reset()
