"""Local state cache kept next to the configuration file.

The cache is the register's source of truth between runs: it holds the full
:class:`~caixa_pdv.engine.AppState` plus the outbox entries that have not
reached the workbook yet. Files are replaced atomically so an interrupted
write never leaves a truncated cache behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from decimal import InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from . import log
from .engine import AppState
from .outbox import Outbox, entry_from_payload, entry_to_payload
from .records import (
    drawer_from_payload,
    drawer_to_payload,
    product_from_payload,
    product_to_payload,
    report_from_payload,
    report_to_payload,
    sale_from_payload,
    sale_to_payload,
)


CACHE_FORMAT_VERSION = 1


def state_to_payload(state: AppState, outbox: Outbox) -> Dict[str, Any]:
    return {
        "version": CACHE_FORMAT_VERSION,
        "products": [product_to_payload(product) for product in state.products],
        "sales": [sale_to_payload(sale) for sale in state.sales],
        "drawer": drawer_to_payload(state.drawer),
        "reports": {key: report_to_payload(report) for key, report in sorted(state.reports.items())},
        "outbox": [entry_to_payload(entry) for entry in outbox.entries],
    }


def state_from_payload(payload: Dict[str, Any]) -> Tuple[AppState, Outbox]:
    state = AppState(
        products=[product_from_payload(raw) for raw in payload.get("products", [])],
        sales=[sale_from_payload(raw) for raw in payload.get("sales", [])],
        drawer=drawer_from_payload(payload.get("drawer", {})),
        reports={key: report_from_payload(raw) for key, raw in payload.get("reports", {}).items()},
    )
    outbox = Outbox(entries=[entry_from_payload(raw) for raw in payload.get("outbox", [])])
    return state, outbox


def _atomic_write(path: Path, data_obj: Dict[str, Any]) -> None:
    tmp_fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", dir=path.parent)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(data_obj, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def save_cache(path: Path, state: AppState, outbox: Outbox) -> None:
    """Write ``state`` and ``outbox`` to ``path`` atomically."""

    path = Path(path).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    _atomic_write(path, state_to_payload(state, outbox))
    log.debug("Saved local cache to %s (%d pending outbox entries)", path, len(outbox))


def load_cache(path: Path) -> Optional[Tuple[AppState, Outbox]]:
    """Load the cache written by :func:`save_cache`.

    Args:
        path (Path): Cache file location.

    Returns:
        tuple[AppState, Outbox] | None: Restored state and outbox, or ``None``
            when no cache exists yet.

    Raises:
        ValueError: If the file exists but cannot be decoded.
    """

    path = Path(path).expanduser().resolve()
    if not path.exists():
        log.debug("No local cache at %s", path)
        return None

    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
        if not isinstance(payload, dict):
            raise TypeError("cache root must be an object")
        restored = state_from_payload(payload)
    except (json.JSONDecodeError, InvalidOperation, KeyError, TypeError, ValueError) as exc:
        log.error("Local cache at %s is corrupt: %s", path, exc)
        raise ValueError(f"Corrupt local cache: {path}") from exc

    log.debug("Loaded local cache from %s", path)
    return restored
