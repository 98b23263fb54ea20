"""Configuration for the qmlrun command line."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from qmlrun.rpc import DEFAULT_ENTRY_POINT, DEFAULT_RPC_TIMEOUT
from qmlrun.runner import RunOptions

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "qmlrun" / "config.json"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class RunnerConfig:
    """qmlrun settings, loaded from config.json and then the environment."""

    host: str = ""  # device address; empty → discover over mDNS
    interface_address: str = ""
    search_timeout: float = 20.0
    entry_point: str = DEFAULT_ENTRY_POINT
    wait: bool = False
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT

    @classmethod
    def load(cls, path: str | Path | None = None) -> RunnerConfig:
        path = Path(path) if path else DEFAULT_CONFIG_PATH
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {f.name for f in fields(cls)}
            filtered = {k: v for k, v in data.items() if k in known}
            config = cls(**filtered)
            logger.debug("Loaded config from %s", path)
        else:
            logger.debug("Config not found at %s, using defaults", path)
            config = cls()
        config.apply_env()
        return config

    def apply_env(self, environ: Optional[dict[str, str]] = None) -> None:
        """Override settings from ``QMLRUN_*`` environment variables."""
        env = os.environ if environ is None else environ
        if env.get("QMLRUN_HOST"):
            self.host = env["QMLRUN_HOST"]
        if env.get("QMLRUN_INTERFACE_ADDRESS"):
            self.interface_address = env["QMLRUN_INTERFACE_ADDRESS"]
        if env.get("QMLRUN_SEARCH_TIMEOUT"):
            try:
                self.search_timeout = float(env["QMLRUN_SEARCH_TIMEOUT"])
            except ValueError:
                logger.warning(
                    "Ignoring invalid QMLRUN_SEARCH_TIMEOUT=%r", env["QMLRUN_SEARCH_TIMEOUT"]
                )
        if env.get("QMLRUN_ENTRY_POINT"):
            self.entry_point = env["QMLRUN_ENTRY_POINT"]
        if "QMLRUN_WAIT" in env:
            self.wait = env["QMLRUN_WAIT"].strip().lower() in _TRUE_VALUES

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump({f.name: getattr(self, f.name) for f in fields(self)}, f, indent=2)

    def to_options(self) -> RunOptions:
        return RunOptions(
            address=self.host or None,
            interface_address=self.interface_address or None,
            search_timeout=self.search_timeout,
            entry_point=self.entry_point,
            wait=self.wait,
            rpc_timeout=self.rpc_timeout,
        )
