"""Command-line runner: ``python -m pushbrotr <notifier|api> [options]``.

The runner reads two YAML files, the shared store config and the service's
own config, opens the store, and either runs one cycle (``--once``) or loops
until SIGINT/SIGTERM with the Prometheus endpoint up.

Examples:
    ```bash
    python -m pushbrotr notifier --once
    python -m pushbrotr api --log-level DEBUG
    python -m pushbrotr notifier --config /etc/pushbrotr/notifier.yaml --store-config store.yaml
    ```

Exit codes: ``0`` success, ``1`` configuration or runtime failure, ``130``
interrupted.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, NamedTuple

import pydantic

from pushbrotr.core import StoreConfig, create_store, start_metrics_server
from pushbrotr.core.base_service import BaseService
from pushbrotr.core.exceptions import ConfigurationError, ConnectionPoolError
from pushbrotr.core.logger import Logger, StructuredFormatter
from pushbrotr.core.store import Store
from pushbrotr.core.yaml import load_yaml
from pushbrotr.models.constants import ServiceName
from pushbrotr.services.api import Api
from pushbrotr.services.notifier import Notifier


CONFIG_BASE = Path("config")
STORE_CONFIG = CONFIG_BASE / "store.yaml"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
POOL_DATABASE_KEYS = ("user", "password_env")
POOL_LIMIT_KEYS = ("min_size", "max_size")


class ServiceEntry(NamedTuple):
    cls: type[BaseService[Any]]
    config_path: Path


SERVICE_REGISTRY: dict[str, ServiceEntry] = {
    name: ServiceEntry(cls, CONFIG_BASE / "services" / f"{name}.yaml")
    for name, cls in ((ServiceName.NOTIFIER, Notifier), (ServiceName.API, Api))
}

logger = Logger("cli")


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


async def _run_once(service_name: str, service: BaseService[Any]) -> int:
    try:
        async with service:
            await service.run()
    except Exception as e:  # process exit code is the error report
        logger.error(f"{service_name}_failed", error=str(e))
        return 1
    logger.info(f"{service_name}_completed")
    return 0


async def _run_continuously(service_name: str, service: BaseService[Any]) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, service, sig)

    metrics_server = await start_metrics_server(service.config.metrics)
    if metrics_server.is_running:
        logger.info("metrics_server_started", url=metrics_server.url)
    try:
        async with service:
            await service.run_forever()
    except Exception as e:  # process exit code is the error report
        logger.error(f"{service_name}_failed", error=str(e))
        return 1
    finally:
        if metrics_server.is_running:
            await metrics_server.stop()
            logger.info("metrics_server_stopped")
    return 0


def _on_signal(service: BaseService[Any], sig: signal.Signals) -> None:
    logger.info("shutdown_signal", signal=sig.name)
    service.request_shutdown()


async def run_service(
    service_name: str,
    service_class: type[BaseService[Any]],
    store: Store,
    service_dict: dict[str, Any],
    *,
    once: bool,
) -> int:
    """Build the service from ``service_dict`` and run it.

    An empty ``service_dict`` means "use the config class defaults", which
    only services whose config has no required fields accept.

    Returns:
        The process exit code.
    """
    try:
        service = (
            service_class.from_dict(service_dict, store=store)
            if service_dict
            else service_class(store=store)
        )
    except ConfigurationError as e:
        logger.error("config_invalid", service=service_name, error=str(e))
        return 1

    if once:
        return await _run_once(service_name, service)
    return await _run_continuously(service_name, service)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pushbrotr", description="Run a pushbrotr service")
    parser.add_argument("service", choices=sorted(SERVICE_REGISTRY), help="service to run")
    parser.add_argument(
        "--config", type=Path, help="service YAML (default: config/services/<service>.yaml)"
    )
    parser.add_argument(
        "--store-config",
        type=Path,
        default=STORE_CONFIG,
        help=f"store YAML (default: {STORE_CONFIG})",
    )
    parser.add_argument("--log-level", choices=LOG_LEVELS, default="INFO")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    """Send every logger through one stderr handler in ``key=value`` format."""
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)


def _load_yaml_dict(path: Path) -> dict[str, Any]:
    """``load_yaml()`` that treats a missing file as an empty config."""
    if path.exists():
        return load_yaml(str(path))
    logger.warning("config_not_found", path=str(path))
    return {}


def _apply_pool_overrides(
    store_dict: dict[str, Any],
    pool_overrides: dict[str, Any] | None,
    service_name: str,
) -> None:
    """Fold a service's ``pool:`` section into the shared postgres store config.

    ``user``/``password_env`` land in ``pool.database``, ``min_size``/``max_size``
    in ``pool.limits``. The connection's ``application_name`` defaults to the
    service name. The memory backend is left alone.
    """
    if store_dict.get("backend", "postgres") != "postgres":
        return
    overrides = pool_overrides or {}
    pool = store_dict.setdefault("pool", {})

    settings = pool.setdefault("server_settings", {})
    if "application_name" in overrides:
        settings["application_name"] = overrides["application_name"]
    else:
        settings.setdefault("application_name", service_name)

    for section, keys in (("database", POOL_DATABASE_KEYS), ("limits", POOL_LIMIT_KEYS)):
        picked = {key: overrides[key] for key in keys if key in overrides}
        if picked:
            pool.setdefault(section, {}).update(picked)


def build_store(store_dict: dict[str, Any]) -> Store:
    """Validate ``store_dict`` and return an unconnected store.

    Raises:
        ConfigurationError: The mapping does not validate.
    """
    try:
        config = StoreConfig.model_validate(store_dict)
    except pydantic.ValidationError as e:
        raise ConfigurationError(f"Invalid store configuration: {e}") from e
    return create_store(config)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    entry = SERVICE_REGISTRY[args.service]

    service_dict = _load_yaml_dict(args.config or entry.config_path)
    store_dict = _load_yaml_dict(args.store_config)
    _apply_pool_overrides(store_dict, service_dict.pop("pool", None), args.service)

    try:
        store = build_store(store_dict)
    except ConfigurationError as e:
        logger.error("config_invalid", error=str(e))
        return 1

    try:
        async with store:
            return await run_service(
                service_name=args.service,
                service_class=entry.cls,
                store=store,
                service_dict=service_dict,
                once=args.once,
            )
    except (ConnectionError, ConnectionPoolError) as e:
        logger.error("connection_failed", error=str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


def cli() -> None:
    """``pushbrotr`` console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
