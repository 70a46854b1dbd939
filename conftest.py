"""Shared pytest configuration: golden-record parametrization and VM fixtures."""

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml
from devices import ScheduledKeyboard
from isa import PC_START
from processor import ControlUnit, Datapath


def pytest_configure(config: Any) -> None:
    """Configure the tests."""
    config.addinivalue_line(
        "markers",
        "golden_test(pattern): parameterize test with YAML files matching pattern",
    )


def _iter_marker_patterns(node: Any) -> Iterator[str]:
    """Yield pattern strings from golden_test markers on `node`."""
    for m in node.iter_markers(name="golden_test"):
        yield m.args[0] if m.args else "golden/*.yaml"


def pytest_generate_tests(metafunc: Any) -> None:
    """Generate tests (parametrization) from YAML golden files."""
    if "golden" not in metafunc.fixturenames:
        return

    patterns = list(_iter_marker_patterns(metafunc.definition)) or ["golden/*.yaml"]
    root = Path(metafunc.config.rootpath)

    files: list[Path] = []
    for pat in patterns:
        files.extend(sorted(root.glob(pat)))

    params: list[dict[str, Any]] = []
    ids: list[str] = []
    for p in files:
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            data = {"__yaml_load_error__": str(e)}
        if isinstance(data, dict):
            data.setdefault("__path__", str(p))
            data.setdefault("__name__", p.name)
        params.append(data)
        ids.append(p.stem)

    metafunc.parametrize("golden", params, ids=ids)


@pytest.fixture
def machine() -> Callable[..., ControlUnit]:
    """Factory: ControlUnit over a fresh Datapath with `words` placed at `origin`."""

    def _make(words: list[int], origin: int = PC_START, stdin: Any = "", **kwargs: Any) -> ControlUnit:
        dp = Datapath(keyboard=ScheduledKeyboard(stdin), **kwargs)
        for i, w in enumerate(words):
            dp.write_word(origin + i, w)
        return ControlUnit(dp)

    return _make
