from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from sipag.orchestrator.models import BackendType
from sipag.orchestrator.registry import ProjectConfig, ProjectRegistry, RegistryError

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Project Registry"),
]


def _github(slug: str, **overrides) -> ProjectConfig:
    return ProjectConfig(slug=slug, backend_type=BackendType.GITHUB, repo="acme/app", **overrides)


def test_add_and_get_round_trip(tmp_path: Path) -> None:
    registry = ProjectRegistry(tmp_path)

    stored = registry.add(_github("app", concurrency_ceiling=3, timeout_seconds=900))
    loaded = registry.get("app")

    assert stored.registered_at is not None
    assert loaded == stored
    assert loaded.resolved_clone_url == "https://github.com/acme/app.git"


def test_add_refuses_duplicates_and_invalid_configs(tmp_path: Path) -> None:
    registry = ProjectRegistry(tmp_path)
    registry.add(_github("app"))

    with pytest.raises(RegistryError, match="already registered"):
        registry.add(_github("app"))
    with pytest.raises(RegistryError, match="Invalid project slug"):
        registry.add(_github("../escape"))
    with pytest.raises(RegistryError, match="labels must differ"):
        registry.add(_github("labels", label_wip="ready"))
    with pytest.raises(RegistryError, match="requires store_path"):
        registry.add(ProjectConfig(slug="tao", backend_type=BackendType.TAO, clone_url="x"))


def test_load_all_orders_by_registration_and_skips_malformed(tmp_path: Path) -> None:
    registry = ProjectRegistry(tmp_path)
    registry.add(_github("zeta", registered_at=datetime(2026, 1, 1, tzinfo=UTC)))
    registry.add(_github("alpha", registered_at=datetime(2026, 2, 1, tzinfo=UTC)))
    broken = tmp_path / "broken"
    broken.mkdir()
    (broken / "config.json").write_text(json.dumps({"slug": "broken"}), "utf-8")

    assert [project.slug for project in registry.load_all()] == ["zeta", "alpha"]
    assert registry.list_slugs() == ["alpha", "broken", "zeta"]


def test_remove_is_refused_while_workers_are_live(tmp_path: Path) -> None:
    registry = ProjectRegistry(tmp_path)
    registry.add(_github("app"))

    with pytest.raises(RegistryError, match="live workers: 3, 9"):
        registry.remove("app", live_task_ids=["9", "3"])

    registry.remove("app")
    assert registry.list_slugs() == []
    with pytest.raises(RegistryError, match="not registered"):
        registry.get("app")
