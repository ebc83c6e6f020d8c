import logging
import sys
from pathlib import Path
from typing import Optional

import click
from fastapi import FastAPI

from index_mirror import __version__
from index_mirror.api.index import router as index_router
from index_mirror.core import dependencies
from index_mirror.core.config import load_config
from index_mirror.domain.errors import AcquisitionError, ConfigError
from index_mirror.domain.models import MirrorConfig
from index_mirror.storage.git_transport import GitTransport

logger = logging.getLogger(__name__)


def configure_logging(config: MirrorConfig) -> None:
    logging.basicConfig(
        level=logging.getLevelName(config.logging.level),
        format=config.logging.format,
        force=True,
    )


def create_app(config: MirrorConfig, transport: Optional[GitTransport] = None) -> FastAPI:
    """
    Build the FastAPI application serving the mirror described by config.
    """
    dependencies.configure(config, transport)

    app = FastAPI(
        title="Package Index Mirror",
        version=__version__,
        description="Serves a periodically refreshed local copy of a git-hosted package index.",
    )

    @app.on_event("startup")
    async def startup_event() -> None:
        """
        Acquire the local copy, then start the periodic refresh.
        A failed acquisition aborts startup.
        """
        mirror = dependencies.get_mirror()
        try:
            await mirror.ensure_initialized(config.repo.git_url, config.repo.path)
        except AcquisitionError as e:
            logger.critical(f"Cannot initialize mirror: {e}")
            raise
        dependencies.get_scheduler().start()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        logger.info("Shutting down, waiting for the sync scheduler...")
        await dependencies.get_scheduler().stop()
        logger.info("Shutdown complete")

    app.include_router(index_router)
    return app


@click.command()
@click.version_option(prog_name="index-mirror", version=__version__)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.toml (defaults to $INDEX_MIRROR_CONFIG or ./config.toml).",
)
def main(config_path: Optional[Path]) -> None:
    """
    Mirror a git-hosted package index and serve it over HTTP.
    """
    import uvicorn

    try:
        config = load_config(config_path)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(str(e))
        sys.exit(2)

    configure_logging(config)
    app = create_app(config)

    logger.info(f"Starting web server on {config.web.address}:{config.web.port}")
    # In-process snapshot state: a single worker process serves all requests.
    uvicorn.run(
        app,
        host=config.web.address,
        port=config.web.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
