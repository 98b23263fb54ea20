"""pytest configuration for qmlrun tests."""

import json

import pytest


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def bundle_dir(tmp_path):
    """A minimal QML application bundle."""
    root = tmp_path / "demo"
    root.mkdir()
    (root / "manifest.json").write_text(json.dumps({"entry_points": {"main": "main.qml"}}))
    (root / "main.qml").write_text("import QtQuick 2.0\nItem {}\n")
    (root / "images").mkdir()
    (root / "images" / "logo.png").write_bytes(b"\x89PNG fake")
    return root
