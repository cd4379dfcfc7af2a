from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_TRUTHY = {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime configuration.

    Environment variables (including those from a local ``.env`` file) are
    resolved through the ``oc.env`` interpolations of the packaged config.
    ``overrides`` are merged on top; unknown keys are rejected.

    Args:
        overrides: Nested mapping of values that take precedence over the environment

    Returns:
        A fully resolved, read-only DictConfig
    """
    load_dotenv()
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    merged = OmegaConf.merge(base, OmegaConf.create(overrides or {}))
    resolved = OmegaConf.create(OmegaConf.to_container(merged, resolve=True))
    OmegaConf.set_readonly(resolved, True)

    concurrency = int(resolved.queue.concurrency)
    if concurrency != 1:
        raise ValueError(f"queue.concurrency must be 1, got {concurrency}")
    return resolved


def is_mock_mode(settings: DictConfig) -> bool:
    return str(settings.ai.use_mock).strip().lower() in _TRUTHY


def configure_logging(settings: DictConfig) -> None:
    level = str(settings.logging.level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
