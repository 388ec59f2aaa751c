from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path

import uvicorn

from .envs.facilitator_env import Settings, get_settings

logger = logging.getLogger("microsettle")


def _install_uvloop() -> None:
    if sys.platform == "win32":
        return
    try:
        import uvloop
    except ImportError:
        logger.info("uvloop not installed; using the default event loop")
        return
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())


def _reset_prometheus_multiproc_dir() -> None:
    """Workers share one directory of metric files; stale ones skew totals."""
    prom_dir = os.environ.get("PROMETHEUS_MULTIPROC_DIR")
    if not prom_dir:
        return
    path = Path(prom_dir)
    path.mkdir(parents=True, exist_ok=True)
    for entry in path.iterdir():
        if entry.is_file():
            entry.unlink()


def _log_startup(settings: Settings) -> None:
    registry = settings.build_chain_registry()
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    logger.info("Store: %s (required=%s)", settings.database_url, settings.store_required)
    for chain in registry.all():
        logger.info(
            "Network %s (chain %d), asset %s", chain.name, chain.chain_id, chain.asset_address
        )
    if not settings.private_key:
        logger.warning("No relayer key configured: settlement is disabled")
    if not settings.identity_verifier_url:
        logger.warning("No identity verifier configured: identity proofs answer 503")
    logger.info(
        "Docs at http://%s:%d/docs", settings.api_host, settings.api_port
    )


def main() -> None:
    """Run the facilitator API under uvicorn."""
    logging.basicConfig(
        level=logging.DEBUG if os.environ.get("FACILITATOR_API_DEBUG") else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    _log_startup(settings)
    _install_uvloop()

    # Reload mode cannot fork workers
    workers = 1 if settings.api_debug else settings.api_workers
    _reset_prometheus_multiproc_dir()

    uvicorn.run(
        "microsettle.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
        workers=workers,
        log_level="debug" if settings.api_debug else "info",
    )


if __name__ == "__main__":
    main()
