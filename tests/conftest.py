"""Shared pytest fixtures and utilities for Caixa PDV tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

candidate_str = str(SRC_DIR)
if candidate_str not in sys.path:
    sys.path.insert(0, candidate_str)

from caixa_pdv import cli, constants, core_logic, data_manager, engine  # noqa: E402
from caixa_pdv.records import Product, StoreSnapshot  # noqa: E402
from caixa_pdv.setup_excel import create_store_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
# Fixed UTC-3 offset, so late-evening local sales fall on the next UTC day.
STORE_TZ = timezone(timedelta(hours=-3))
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n"
    "{time_zone_line}\n"
    "[Sync]\n"
    "CacheFile = {cache_file}\n"
    "HistoryDays = {history_days}\n"
    "MaxAttempts = {max_attempts}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    cache_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "store_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def store_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Loja Teste",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        time_zone: str | None = None,
        history_days: int = 60,
        max_attempts: int = 5,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        cache_path = bundle_dir / ".caixa_cache.json"
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=workbook_path.name if make_relative else str(workbook_path),
                store_name=store_name,
                schema_version=schema_version,
                time_zone_line=f"TimeZone = {time_zone}\n" if time_zone else "",
                cache_file=cache_path.name if make_relative else str(cache_path),
                history_days=history_days,
                max_attempts=max_attempts,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            cache_path=cache_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Clock and domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store_tz() -> timezone:
    return STORE_TZ


@pytest.fixture
def at() -> Callable[..., datetime]:
    """Build aware instants on the store's local clock."""

    def _at(day: str = "2025-10-30", hour: int = 12, minute: int = 0) -> datetime:
        base = datetime.fromisoformat(day)
        return base.replace(hour=hour, minute=minute, tzinfo=STORE_TZ)

    return _at


@pytest.fixture
def product_factory() -> Callable[..., Product]:
    """Create products with sensible defaults."""

    def _make(
        product_id: str = "P-1",
        *,
        name: str = "Coxinha",
        stock: int = 10,
        price: str = "5.00",
        category: constants.ProductCategory = constants.ProductCategory.FOOD,
    ) -> Product:
        return Product(
            product_id=product_id,
            name=name,
            stock=stock,
            price=Decimal(price),
            category=category,
        )

    return _make


@pytest.fixture
def state(product_factory: Callable[..., Product]) -> engine.AppState:
    """Register state holding two food items and one store item."""

    return engine.AppState(
        products=[
            product_factory("P-1", name="Coxinha", stock=10, price="5.00"),
            product_factory("P-2", name="Suco", stock=3, price="7.50"),
            product_factory(
                "P-3",
                name="Caderno",
                stock=0,
                price="12.00",
                category=constants.ProductCategory.STORE,
            ),
        ]
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="caixa-cli", description="Caixa CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "store_workbook.xlsx",
        store_name="Loja Teste",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        time_zone=STORE_TZ,
        cache_file=tmp_path / ".caixa_cache.json",
        history_days=60,
        max_attempts=3,
    )


@pytest.fixture
def repository() -> Mock:
    """Return a mock repository whose snapshot is empty."""

    repo = Mock(name="repository")
    repo.fetch_snapshot.return_value = StoreSnapshot()
    return repo


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    state: engine.AppState,
    repository: Mock,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings, state and repository."""

    return core_logic.RuntimeContext(settings=settings, state=state, repository=repository)
