import click
import uvicorn

from kalissh.logging_config import get_logging_config
from kalissh.modules.config import get_config


@click.command()
@click.option("--host", default=None, help="Bind address (defaults to API_HOST)")
@click.option("--port", default=None, type=int, help="Bind port (defaults to API_PORT)")
@click.option("--log-level", default=None, help="Log level (defaults to LOG_LEVEL)")
@click.option("--reload/--no-reload", default=None, help="Auto-reload on code changes")
def main(host, port, log_level, reload):
    """Run the KaliSSH API server."""
    config = get_config()
    level = (log_level or config.get("log_level")).upper()

    uvicorn.run(
        "kalissh.main:app",
        host=host or config.get("host"),
        port=port or config.get("port"),
        log_level=level.lower(),
        reload=config.get("debug") if reload is None else reload,
        log_config=get_logging_config(level),
    )


if __name__ == "__main__":
    main()
