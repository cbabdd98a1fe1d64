from pathlib import Path

import pytest

tomllib = pytest.importorskip("tomllib")


def _pyproject() -> dict:
    pyproject_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
    return tomllib.loads(pyproject_path.read_text(encoding="utf-8"))


def test_pyproject_declares_test_tooling_as_optional_extra():
    poetry = _pyproject()["tool"]["poetry"]
    dependencies = poetry["dependencies"]

    for name in ("pytest", "pytest-asyncio"):
        assert isinstance(dependencies[name], dict)
        assert dependencies[name]["optional"] is True
        assert name in poetry["extras"]["test"]


def test_pyproject_exposes_cli_entry_point():
    poetry = _pyproject()["tool"]["poetry"]

    assert poetry["scripts"]["dpiwarden"] == "dpiwarden.cli.main:app"
    assert {"include": "dpiwarden", "from": "src"} in poetry["packages"]
